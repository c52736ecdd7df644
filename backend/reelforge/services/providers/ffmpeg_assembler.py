"""Local media assembly with ffmpeg.

Concatenates scene clips in order and lays the voiceover track under them:
- concat demuxer for hard cuts (crossfade_seconds == 0.0)
- xfade filter for crossfade transitions (crossfade_seconds > 0.0)
- voiceover muxed as the audio track, trimmed to the video length

ffmpeg runs in a worker thread via asyncio.to_thread so the event loop
stays responsive during long renders.
"""

import asyncio
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from reelforge.services.errors import ProviderTerminalError, StateConsistencyError
from reelforge.services.providers.base import AssemblyProvider, AssemblyRequest, MediaResult

logger = logging.getLogger(__name__)


class FfmpegAssemblyProvider(AssemblyProvider):
    name = "ffmpeg"

    def __init__(self, ffmpeg_binary: str = "ffmpeg"):
        self.ffmpeg = ffmpeg_binary

    async def assemble(self, request: AssemblyRequest) -> MediaResult:
        if not request.clips:
            raise StateConsistencyError("No video clips available for assembly")

        clip_paths = []
        for clip in request.clips:
            if clip.path is None:
                raise StateConsistencyError(
                    f"Clip for scene {clip.scene_index} is not in local storage: {clip.url}"
                )
            clip_paths.append(clip.path)

        missing = [str(p) for p in clip_paths if not p.exists()]
        if missing:
            raise StateConsistencyError(f"Missing clip files: {missing}")

        durations = [c.duration_seconds for c in request.clips]
        logger.info(
            f"Job {request.job_id}: assembling {len(clip_paths)} clips "
            f"(crossfade={request.crossfade_seconds}s, voiceover={bool(request.voiceover_path)})"
        )

        try:
            data = await asyncio.to_thread(
                self._render,
                clip_paths,
                durations,
                request.voiceover_path,
                request.crossfade_seconds,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
            logger.error(f"Job {request.job_id}: ffmpeg error: {stderr}")
            raise ProviderTerminalError(
                f"Video assembly failed: {stderr[-500:]}",
                details={"returncode": e.returncode},
            ) from e

        return MediaResult(
            data=data,
            content_type="video/mp4",
            duration_seconds=sum(durations),
            meta={"provider": self.name, "clip_count": len(clip_paths)},
        )

    def _render(
        self,
        clip_paths: list[Path],
        durations: list[float],
        voiceover_path: Optional[Path],
        crossfade: float,
    ) -> bytes:
        with tempfile.TemporaryDirectory(prefix="reelforge-") as workdir:
            work = Path(workdir)
            video_path = work / "video.mp4"
            if crossfade > 0.0 and len(clip_paths) > 1:
                self._stitch_with_crossfade(clip_paths, durations, video_path, crossfade)
            else:
                self._stitch_concat_demuxer(clip_paths, video_path)

            if voiceover_path is None:
                return video_path.read_bytes()

            output_path = work / "final.mp4"
            self._mux_voiceover(video_path, voiceover_path, output_path)
            return output_path.read_bytes()

    def _run(self, args: list[str]) -> None:
        subprocess.run([self.ffmpeg, "-y", *args], check=True, capture_output=True)

    def _stitch_concat_demuxer(self, clip_paths: list[Path], output_path: Path) -> None:
        """Hard cuts via the concat demuxer; -safe 0 allows absolute paths."""
        list_file = output_path.parent / "concat_list.txt"
        with open(list_file, "w") as f:
            for clip_path in clip_paths:
                f.write(f"file '{clip_path.resolve()}'\n")

        self._run([
            "-f", "concat",
            "-safe", "0",
            "-i", str(list_file),
            "-c", "copy",
            str(output_path),
        ])

    def _stitch_with_crossfade(
        self,
        clip_paths: list[Path],
        durations: list[float],
        output_path: Path,
        crossfade: float,
    ) -> None:
        """Chain xfade filters: [0:v][1:v]xfade[v01];[v01][2:v]xfade[v02];..."""
        inputs = []
        for clip_path in clip_paths:
            inputs.extend(["-i", str(clip_path)])

        filter_parts = []
        prev_label = "0:v"
        elapsed = durations[0]
        for i in range(1, len(clip_paths)):
            out_label = f"v{i:02d}"
            # Each transition overlaps the previous output's tail
            offset = elapsed - crossfade * i
            filter_parts.append(
                f"[{prev_label}][{i}:v]xfade=transition=fade:"
                f"duration={crossfade}:offset={offset:.3f}[{out_label}]"
            )
            prev_label = out_label
            elapsed += durations[i]

        self._run([
            *inputs,
            "-filter_complex", ";".join(filter_parts),
            "-map", f"[{prev_label}]",
            "-vsync", "vfr",
            str(output_path),
        ])

    def _mux_voiceover(self, video_path: Path, audio_path: Path, output_path: Path) -> None:
        self._run([
            "-i", str(video_path),
            "-i", str(audio_path),
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
            "-shortest",
            str(output_path),
        ])
