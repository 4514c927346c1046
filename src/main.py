"""
Audio2Afan command line tool

Converts a speech recording into an AFAN blendshape animation using the
model directory configured in settings (or given with --model-dir).

Usage:
    audio2afan speech.wav -o speech.afan

Or run directly:
    python main.py speech.wav --fps 60 --emotion joy=0.5
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional, Sequence

import librosa
import numpy as np
import orjson

from audio2afan import EXPLICIT_EMOTIONS, RangeError
from core.config import Settings, get_settings
from core.logger import LEVEL_NAMES, get_logger, set_log_level, setup_logging
from services import Audio2AfanService, GenerationResult

logger = get_logger(__name__)


def _emotion_arg(text: str) -> tuple[str, float]:
    name, sep, value = text.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"Expected name=value, got '{text}'")
    try:
        return name.strip(), float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid emotion value in '{text}'") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audio2afan",
        description="Generate ARKit blendshape animation (AFAN) from speech audio.",
    )
    parser.add_argument("input", type=Path, help="Input audio file (any format librosa can read)")
    parser.add_argument("-o", "--output", type=Path, help="Output .afan file (default: INPUT with .afan suffix)")
    parser.add_argument("--model-dir", help="Directory with model.onnx, config.json and solve_data.npz")
    parser.add_argument("--fps", type=int, help="Animation frame rate (1-255)")
    parser.add_argument("--afan-version", type=int, choices=(1, 2), help="AFAN format version")
    parser.add_argument(
        "--emotion",
        type=_emotion_arg,
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help=f"Emotion control, repeatable. Names: {', '.join(EXPLICIT_EMOTIONS)}",
    )
    parser.add_argument("--frames-json", type=Path, help="Also write the decoded frames as JSON")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LEVEL_NAMES,
        help="Logging level, overriding LOG_LEVEL and DEBUG from the environment",
    )
    return parser


def settings_from_args(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    """Layer command line overrides on top of environment settings."""
    base = base or get_settings()
    overrides = {}
    if args.model_dir:
        overrides["model_dir"] = args.model_dir
    if args.fps is not None:
        overrides["blendshape_fps"] = args.fps
    if args.afan_version is not None:
        overrides["afan_version"] = args.afan_version
    if not overrides:
        return base
    return Settings(**{**base.model_dump(), **overrides})


def write_frames_json(path: Path, result: GenerationResult) -> None:
    payload = {
        "duration": result.duration,
        "profile": result.profile,
        "frames": [r.to_dict() for r in result.results],
    }
    path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2 | orjson.OPT_SERIALIZE_NUMPY))


async def run(args: argparse.Namespace, settings: Settings) -> int:
    service = Audio2AfanService(settings)
    if not service.is_available:
        logger.error(f"Model unavailable at {settings.model_path}")
        return 1

    try:
        return await _generate_to_files(service, args)
    finally:
        service.pipeline.dispose()


async def _generate_to_files(service: Audio2AfanService, args: argparse.Namespace) -> int:
    try:
        service.pipeline.set_emotions(dict(args.emotion))
    except RangeError as e:
        logger.error(str(e))
        return 2

    audio, sample_rate = librosa.load(args.input, sr=None, mono=True)
    audio = np.asarray(audio, dtype=np.float32)
    logger.info(f"Loaded {args.input} ({audio.shape[0] / sample_rate:.2f}s @ {sample_rate}Hz)")

    result = await service.generate(audio, int(sample_rate))

    output = args.output or args.input.with_suffix(".afan")
    output.write_bytes(result.animation)
    logger.info(f"Wrote {len(result.animation)} bytes to {output}")

    if args.frames_json:
        write_frames_json(args.frames_json, result)
        logger.info(f"Wrote {len(result.results)} frames to {args.frames_json}")

    logger.info("=" * 60)
    logger.info(f"Audio duration: {result.duration:.2f}s")
    logger.info(f"Total:          {result.total_ms:.0f}ms")
    logger.info(f"RTFx:           {result.realtime_factor:.2f}x")
    logger.info("=" * 60)

    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings_from_args(args)
    setup_logging("DEBUG" if settings.debug else settings.log_level)
    if args.log_level:
        set_log_level(args.log_level)

    if not args.input.exists():
        logger.error(f"Input file not found: {args.input}")
        return 1

    return asyncio.run(run(args, settings))


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
