from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from .config import load_config, override_config
from .errors import FruitClassifierError
from .persistence import load_model
from .pipeline import ClassificationPipeline
from .utils import configure_logging, get_device


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Classify a single image with a saved model.")
    parser.add_argument("--image", type=str, required=True, help="Path to the input image.")
    parser.add_argument("--model", type=str, required=True, help="Path to the saved model archive.")
    parser.add_argument("--config", type=str, help="Config file used during training.")
    parser.add_argument("--device", type=str, help="Override device (cuda/mps/cpu).")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging level.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = load_config(args.config)
        config = override_config(config, {"device": args.device})

        model = load_model(args.model, device=get_device(config.device))
        record = ClassificationPipeline(config).predict_image(model, args.image)
    except FruitClassifierError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    print(f"Predicted label: {record.predicted_label} with confidence {record.confidence:.4f}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
