from __future__ import annotations

import base64
import copy
import json
import random
import uuid
from pathlib import Path
from typing import Any

from app.clients.errors import (
    ConfigurationError,
    ConnectionFailure,
    GenerationTimeout,
    HttpStatusFailure,
    ProviderError,
    ProviderJobFailed,
    TransportTimeout,
)
from app.clients.providers.base import ProviderAdapter
from app.models.generation import (
    ArtifactReference,
    GenerationRequest,
    ImageRole,
    JobHandle,
    OutputKind,
    ProviderCapabilities,
    ProviderMode,
    ProviderResult,
)
from app.services.normalizer import pick_video_artifact

TERMINAL_FAILURES = {"FAILED", "CANCELLED", "TIMED_OUT"}
SEED_SAMPLERS = {"KSampler", "KSamplerAdvanced", "SamplerCustom"}
VIEW_SUBFOLDERS = ("", "output")
MIN_VIDEO_BYTES = 10_000


def inject_workflow(
    workflow: dict[str, Any],
    prompt: str,
    first_image: str | None = None,
    last_image: str | None = None,
    seed: int | None = None,
) -> dict[str, Any]:
    """Return a copy of a ComfyUI graph with images, prompt and seed filled in.

    Nodes are matched by ``class_type``: LoadImage nodes in id order receive
    the first and then the last frame, positive CLIPTextEncode nodes get the
    prompt prepended, and every sampler gets a fresh seed.
    """
    graph = copy.deepcopy(workflow)
    seed = seed if seed is not None else random.randrange(10_000_000_000_000)

    load_nodes = [node for _, node in sorted(graph.items(), key=lambda item: _node_order(item[0]))
                  if isinstance(node, dict) and node.get("class_type") == "LoadImage"]
    for node, image in zip(load_nodes, (first_image, last_image)):
        if image:
            node.setdefault("inputs", {})["image"] = image

    for node in graph.values():
        if not isinstance(node, dict):
            continue
        class_type = node.get("class_type")
        inputs = node.setdefault("inputs", {})
        if class_type == "CLIPTextEncode" and prompt and not _is_negative(node):
            existing = inputs.get("text") or ""
            inputs["text"] = f"{prompt}, {existing}" if existing else prompt
        elif class_type in SEED_SAMPLERS:
            if "noise_seed" in inputs:
                inputs["noise_seed"] = seed
            else:
                inputs["seed"] = seed
    return graph


def _node_order(key: str) -> tuple[int, str]:
    return (int(key), key) if key.isdigit() else (1 << 30, key)


def _is_negative(node: dict[str, Any]) -> bool:
    title = ((node.get("_meta") or {}).get("title") or "").lower()
    return "negative" in title


class RunPodComfyAdapter(ProviderAdapter):
    """ComfyUI workflows executed on a RunPod serverless endpoint."""

    name = "runpod"
    capabilities = ProviderCapabilities(
        mode=ProviderMode.POLLING,
        output=OutputKind.VIDEO,
        supports_interpolation=True,
        requires_image=True,
        max_clip_seconds=10,
    )

    def __init__(
        self,
        base_url: str | None,
        api_key: str | None,
        workflow: dict[str, Any] | None = None,
        workflow_path: str | None = None,
        poll_interval: float = 3.0,
        max_polls: int = 1000,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        base = (base_url or "").rstrip("/")
        self.base_url = base[: -len("/run")] if base.endswith("/run") else base
        self.api_key = (api_key or "").strip()
        self.workflow = workflow
        self.workflow_path = workflow_path
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    def enabled(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _load_workflow(self) -> dict[str, Any]:
        if self.workflow is None and self.workflow_path:
            path = Path(self.workflow_path)
            if not path.is_file():
                raise ConfigurationError(f"runpod workflow not found at {path}")
            self.workflow = json.loads(path.read_text(encoding="utf-8"))
        if not self.workflow:
            raise ConfigurationError("runpod workflow is not configured")
        return self.workflow

    async def submit(self, request: GenerationRequest) -> JobHandle:
        if not self.enabled():
            raise ConfigurationError("runpod endpoint or api key is not configured")
        workflow = self._load_workflow()

        images: list[dict[str, str]] = []
        first = request.image(ImageRole.FIRST_FRAME) or request.image(ImageRole.SINGLE)
        last = request.image(ImageRole.LAST_FRAME)
        first_name = last_name = None
        if first is not None:
            first_name = f"first_{uuid.uuid4().hex}.png"
            images.append({"name": first_name, "image": base64.b64encode(first.data).decode("ascii")})
        if last is not None:
            last_name = f"last_{uuid.uuid4().hex}.png"
            images.append({"name": last_name, "image": base64.b64encode(last.data).decode("ascii")})

        graph = inject_workflow(workflow, request.prompt, first_name, last_name, request.settings.get("seed"))
        payload = {"input": {"workflow": graph, "images": images}}
        response = await self._call("POST", f"{self.base_url}/run", json=payload, headers=self._headers())
        job_id = (response.json() or {}).get("id")
        if not job_id:
            raise ProviderError(f"runpod did not return a job id: {response.text[:300]}")
        self.log.info("runpod job queued", extra={"runpod_job_id": job_id, "images": len(images)})
        return JobHandle(provider=self.name, job_id=job_id)

    async def wait(self, handle: JobHandle, timeout: float | None = None) -> ProviderResult:
        if handle.result is not None:
            return handle.result
        budget = self._poll_budget(self.poll_interval, self.max_polls, timeout)
        url = f"{self.base_url}/status/{handle.job_id}"
        for attempt in range(budget):
            try:
                response = await self._call("GET", url, headers=self._headers())
            except (TransportTimeout, ConnectionFailure, HttpStatusFailure) as exc:
                self.log.warning(
                    "runpod status poll failed",
                    extra={"runpod_job_id": handle.job_id, "attempt": attempt, "error": str(exc)},
                )
            else:
                body = response.json() or {}
                state = str(body.get("status") or "").upper()
                if state == "COMPLETED":
                    artifact = pick_video_artifact(body.get("output"))
                    return ProviderResult(artifacts=[artifact], raw=body.get("output"))
                if state in TERMINAL_FAILURES:
                    raise ProviderJobFailed(self.name, state, _error_detail(body))
            await self.sleep(self.poll_interval)
        raise GenerationTimeout(f"runpod job {handle.job_id} did not finish after {budget} polls")

    async def fetch_artifact(self, reference: ArtifactReference) -> bytes:
        if reference.is_url:
            return await super().fetch_artifact(reference)
        subfolders = [reference.metadata.get("subfolder", ""), *VIEW_SUBFOLDERS]
        tried: list[str] = []
        for subfolder in dict.fromkeys(subfolders):
            params = {"filename": reference.value, "subfolder": subfolder, "type": "output"}
            try:
                response = await self._call("GET", f"{self.base_url}/view", params=params, headers=self._headers())
            except ProviderError as exc:
                self.log.warning(
                    "runpod view fetch failed",
                    extra={"artifact": reference.value, "subfolder": subfolder, "error": str(exc)},
                )
                tried.append(subfolder)
                continue
            if len(response.content) > MIN_VIDEO_BYTES:
                return response.content
            tried.append(subfolder)
        raise ProviderError(f"runpod artifact {reference.value} not found in subfolders {tried}")


def _error_detail(body: dict[str, Any]) -> str | None:
    error = body.get("error")
    if error is None:
        return None
    return error if isinstance(error, str) else json.dumps(error)[:500]
