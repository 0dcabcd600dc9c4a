from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, replace
from pathlib import Path

from tumor_ai.config import Settings
from tumor_ai.errors import DecodeError, EmptyOutput, EngineUnavailable, ImageTooLarge
from tumor_ai.inference.engine import InferenceEngine
from tumor_ai.inference.postprocess import format_result
from tumor_ai.pipeline import Classifier

EXIT_OK = 0
EXIT_IMAGE_FAILED = 1
EXIT_ENGINE_UNAVAILABLE = 2


@dataclass(frozen=True)
class ClassifyArgs:
    images: tuple[Path, ...]
    model: Path | None
    size: int | None


def parse_args(argv: list[str] | None = None) -> ClassifyArgs:
    ap = argparse.ArgumentParser(description="Classify brain MRI images with the tumor model")
    ap.add_argument("images", nargs="+", help="Image files to classify")
    ap.add_argument("--model", default=None, help="Model file (.tflite or TorchScript)")
    ap.add_argument("--size", type=int, default=None, help="Model input side length in pixels")
    a = ap.parse_args(argv)
    if a.size is not None and int(a.size) < 1:
        ap.error("--size must be >= 1")
    return ClassifyArgs(
        images=tuple(Path(str(p)) for p in a.images),
        model=Path(str(a.model)) if a.model is not None else None,
        size=int(a.size) if a.size is not None else None,
    )


def _settings_for(args: ClassifyArgs, base: Settings) -> Settings:
    clf = base.classifier
    if args.model is not None:
        clf = replace(clf, model_path=args.model)
    if args.size is not None:
        clf = replace(clf, input_size=args.size)
    return replace(base, classifier=clf)


def classify_files(classifier: Classifier, images: tuple[Path, ...]) -> int:
    """Print one result line per image; returns the process exit code."""
    failed = False
    for path in images:
        try:
            raw = path.read_bytes()
            out = classifier.classify_bytes(raw)
        except OSError as exc:
            print(f"{path.as_posix()}: cannot read file ({exc.strerror or exc})")
            failed = True
            continue
        except (DecodeError, EmptyOutput, ImageTooLarge) as exc:
            print(f"{path.as_posix()}: {exc.message}")
            failed = True
            continue
        print(f"{path.as_posix()}: {format_result(out.result)}")
    return EXIT_IMAGE_FAILED if failed else EXIT_OK


def run(args: ClassifyArgs, settings: Settings) -> int:
    try:
        with InferenceEngine(_settings_for(args, settings)) as engine:
            return classify_files(Classifier(engine), args.images)
    except EngineUnavailable as exc:
        print(f"model unavailable: {exc.message}", file=sys.stderr)
        return EXIT_ENGINE_UNAVAILABLE


def main() -> None:  # pragma: no cover - tiny glue
    from tumor_ai.logging import init_logging

    init_logging()
    raise SystemExit(run(parse_args(), Settings.load()))


if __name__ == "__main__":
    main()
