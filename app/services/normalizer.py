from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlsplit

from app.models.generation import ArtifactReference, NoArtifact, OutputKind

MAX_DEPTH = 6
SNIPPET_LENGTH = 500
VIDEO_SUFFIXES = (".mp4", ".webm", ".mov", ".avi", ".mkv")
ARTIFACT_KEYS = ("videos", "gifs", "files", "images", "filenames", "video", "output", "result", "media")
POINTER_FIELDS = ("filename", "url", "name", "path", "data")


def collect_artifacts(output: Any, depth: int = 0) -> list[Any]:
    """Walk nested provider output and collect every artifact-looking candidate.

    Strings and mappings carrying a pointer field are candidates; containers
    under a known artifact key are descended into. Recursion stops at
    ``MAX_DEPTH`` levels.
    """
    if output is None or depth > MAX_DEPTH:
        return []
    if isinstance(output, str):
        return [output]
    if isinstance(output, list):
        found: list[Any] = []
        for item in output:
            found.extend(collect_artifacts(item, depth + 1))
        return found
    if not isinstance(output, dict):
        return []

    found = []
    if any(isinstance(output.get(name), str) and output.get(name) for name in POINTER_FIELDS):
        found.append(output)
    for key in ARTIFACT_KEYS:
        if key in output:
            found.extend(collect_artifacts(output[key], depth + 1))
    for key, value in output.items():
        if key in ARTIFACT_KEYS:
            continue
        if isinstance(value, (dict, list)):
            found.extend(collect_artifacts(value, depth + 1))
    return found


def normalize_artifact(candidate: Any) -> ArtifactReference | None:
    if isinstance(candidate, str):
        value = candidate.strip()
        if not value:
            return None
        kind = "url" if value.startswith(("http://", "https://")) else "name"
        return ArtifactReference(value=value, kind=kind, media=_media_of(value))
    if not isinstance(candidate, dict):
        return None

    if candidate.get("type") == "s3_url" and isinstance(candidate.get("data"), str):
        value = candidate["data"]
        return ArtifactReference(value=value, kind="url", media=_media_of(value), metadata={"public": True})
    url = candidate.get("url")
    if isinstance(url, str) and url:
        return ArtifactReference(value=url, kind="url", media=_media_of(url))
    for name in ("filename", "name", "path"):
        value = candidate.get(name)
        if isinstance(value, str) and value:
            metadata = {}
            if isinstance(candidate.get("subfolder"), str):
                metadata["subfolder"] = candidate["subfolder"]
            kind = "url" if value.startswith(("http://", "https://")) else "name"
            return ArtifactReference(value=value, kind=kind, media=_media_of(value), metadata=metadata)
    return None


def is_video_reference(value: str) -> bool:
    path = urlsplit(value).path if "://" in value else value.split("?", 1)[0]
    return path.lower().endswith(VIDEO_SUFFIXES)


def unwrap_output(raw: Any) -> Any:
    """Peel the ``message`` envelope (possibly JSON-encoded) and the ``outputs`` key."""
    output = raw
    if isinstance(output, dict) and "message" in output:
        message = output["message"]
        if isinstance(message, str):
            try:
                message = json.loads(message)
            except json.JSONDecodeError:
                pass
        output = message
    if isinstance(output, dict) and "outputs" in output:
        output = output["outputs"]
    return output


def pick_video_artifact(raw: Any) -> ArtifactReference | NoArtifact:
    output = unwrap_output(raw)
    references = [ref for ref in map(normalize_artifact, collect_artifacts(output)) if ref is not None]
    for reference in references:
        if reference.media == OutputKind.VIDEO:
            return reference
    return NoArtifact(snippet=snippet(raw))


def snippet(raw: Any, length: int = SNIPPET_LENGTH) -> str:
    try:
        text = json.dumps(raw, default=str)
    except (TypeError, ValueError):
        text = repr(raw)
    return text[:length]


def _media_of(value: str) -> OutputKind:
    return OutputKind.VIDEO if is_video_reference(value) else OutputKind.IMAGE
