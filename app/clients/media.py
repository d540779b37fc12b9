from __future__ import annotations

import io
import logging
import os
import subprocess
import uuid
from typing import Optional, Sequence

import numpy as np
from moviepy import VideoFileClip
from PIL import Image

LAST_FRAME_POSITION = 0.99
NORMALIZED_FILTER = "scale=1280:720:force_original_aspect_ratio=decrease,pad=1280:720:(ow-iw)/2:(oh-ih)/2,fps=30"


class MediaToolkit:
    """ffmpeg and moviepy helpers for scene post-processing.

    Every method is blocking; async callers run them in a worker thread.
    """

    def __init__(
        self,
        ffmpeg_binary: str = "ffmpeg",
        narration_volume: float = 1.0,
        music_volume: float = 0.2,
        music_only_volume: float = 0.3,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.ffmpeg_binary = ffmpeg_binary
        self.narration_volume = narration_volume
        self.music_volume = music_volume
        self.music_only_volume = music_only_volume
        self.log = logger or logging.getLogger(__name__)

    def duration(self, video_path: str) -> float:
        with VideoFileClip(video_path) as clip:
            return float(clip.duration or 0.0)

    def has_audio(self, video_path: str) -> bool:
        with VideoFileClip(video_path) as clip:
            return clip.audio is not None

    def extract_last_frame(self, video_path: str) -> bytes:
        with VideoFileClip(video_path) as clip:
            duration = float(clip.duration or 0.0)
            frame = clip.get_frame(max(duration * LAST_FRAME_POSITION, 0.0))
        image = Image.fromarray(np.asarray(frame).astype("uint8"))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        self.log.info("last frame extracted", extra={"video": video_path, "at": duration * LAST_FRAME_POSITION})
        return buffer.getvalue()

    def merge(
        self,
        video_path: str,
        narration_path: str | None = None,
        music_path: str | None = None,
        output_path: str | None = None,
    ) -> str:
        if not narration_path and not music_path:
            return video_path
        output_path = output_path or _sibling(video_path, "merged")
        duration = self.duration(video_path)

        cmd = [self.ffmpeg_binary, "-y", "-i", video_path]
        chains: list[str] = []
        if narration_path and music_path:
            cmd += ["-i", narration_path, "-i", music_path]
            chains.append(f"[1:a]volume={self.narration_volume},apad,atrim=0:{duration:.3f}[narr]")
            chains.append(f"[2:a]aloop=loop=-1:size=2e9,atrim=0:{duration:.3f},volume={self.music_volume}[mus]")
            chains.append("[narr][mus]amix=inputs=2:duration=longest:dropout_transition=0[aout]")
        elif narration_path:
            cmd += ["-i", narration_path]
            chains.append(f"[1:a]volume={self.narration_volume},apad,atrim=0:{duration:.3f}[aout]")
        else:
            cmd += ["-i", music_path]
            chains.append(
                f"[1:a]aloop=loop=-1:size=2e9,atrim=0:{duration:.3f},volume={self.music_only_volume}[aout]"
            )
        cmd += [
            "-filter_complex", ";".join(chains),
            "-map", "0:v",
            "-map", "[aout]",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", "192k",
            "-shortest",
            output_path,
        ]
        self._run(cmd, "audio merge")
        return output_path

    def normalize(self, video_path: str, output_path: str | None = None) -> str:
        """Re-encode to 1280x720 at 30fps with a stereo AAC track.

        Scenes from different providers only concatenate cleanly once they
        share resolution, frame rate and audio layout; silent clips get a
        generated silent track.
        """
        output_path = output_path or _sibling(video_path, "normalized")
        cmd = [self.ffmpeg_binary, "-y", "-fflags", "+genpts", "-i", video_path]
        if not self.has_audio(video_path):
            cmd += ["-f", "lavfi", "-i", "anullsrc=channel_layout=stereo:sample_rate=44100",
                    "-map", "0:v", "-map", "1:a", "-shortest"]
        cmd += [
            "-vf", NORMALIZED_FILTER,
            "-c:v", "libx264",
            "-preset", "ultrafast",
            "-crf", "28",
            "-c:a", "aac",
            "-ar", "44100",
            "-pix_fmt", "yuv420p",
            "-avoid_negative_ts", "make_zero",
            output_path,
        ]
        self._run(cmd, "normalization")
        return output_path

    def add_music_bed(self, video_path: str, music_path: str, output_path: str | None = None) -> str:
        """Mix looped music under the video's own audio track."""
        output_path = output_path or _sibling(video_path, "scored")
        duration = self.duration(video_path)
        graph = ";".join([
            f"[1:a]aloop=loop=-1:size=2e9,atrim=0:{duration:.3f},volume={self.music_volume}[mus]",
            "[0:a][mus]amix=inputs=2:duration=first:dropout_transition=0[aout]",
        ])
        cmd = [
            self.ffmpeg_binary, "-y", "-i", video_path, "-i", music_path,
            "-filter_complex", graph,
            "-map", "0:v",
            "-map", "[aout]",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", "192k",
            output_path,
        ]
        self._run(cmd, "music bed")
        return output_path

    def concatenate(self, video_paths: Sequence[str], output_path: str | None = None) -> str:
        if not video_paths:
            raise ValueError("nothing to concatenate")
        if len(video_paths) == 1:
            return video_paths[0]
        output_path = output_path or _sibling(video_paths[0], "joined")
        list_path = _sibling(video_paths[0], "concat", ".txt")
        with open(list_path, "w", encoding="utf-8") as handle:
            for path in video_paths:
                escaped = os.path.abspath(path).replace("'", "'\\''")
                handle.write(f"file '{escaped}'\n")
        cmd = [self.ffmpeg_binary, "-y", "-f", "concat", "-safe", "0", "-i", list_path, "-c", "copy", output_path]
        self._run(cmd, "concatenation")
        return output_path

    def _run(self, cmd: list[str], label: str) -> None:
        try:
            subprocess.run(cmd, check=True, capture_output=True)
        except FileNotFoundError as exc:
            raise RuntimeError(f"{self.ffmpeg_binary} is not installed") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or b"").decode("utf-8", errors="replace")[-1000:]
            self.log.error(f"ffmpeg {label} failed", extra={"returncode": exc.returncode, "stderr": stderr})
            raise RuntimeError(f"ffmpeg {label} failed: {stderr}") from exc


def _sibling(path: str, tag: str, suffix: str = ".mp4") -> str:
    directory = os.path.dirname(os.path.abspath(path))
    return os.path.join(directory, f"{tag}_{uuid.uuid4().hex}{suffix}")
