"""
Model asset lookup. Downloading is handled elsewhere; this only answers where
a model file lives and whether it is present.
"""

import csv
import json
from pathlib import Path
from typing import Dict, List, Optional

from .logging import get_logger

NSFW_MODEL = "nsfw-classifier.onnx"
TAGGER_MODEL = "wd-tagger-v3.onnx"
TAGGER_LABELS = "wd-tags.json"
TAGGER_LABELS_CSV = "selected_tags.csv"
BODY_MODEL = "nudenet-classifier.onnx"
CLIP_VISION_MODEL = "clip-vision.onnx"
CLIP_TEXT_MODEL = "clip-text.onnx"
CLIP_TOKENIZER = "clip-tokenizer.json"

KNOWN_ASSETS = {
    NSFW_MODEL: "NSFW Classifier",
    TAGGER_MODEL: "WD Tagger v3",
    TAGGER_LABELS: "WD Tag Labels",
    BODY_MODEL: "NudeNet Classifier",
    CLIP_VISION_MODEL: "CLIP Vision",
    CLIP_TEXT_MODEL: "CLIP Text",
    CLIP_TOKENIZER: "CLIP Tokenizer",
}


class ModelAssets:
    """Resolves model files inside the model cache directory."""

    def __init__(self, model_dir: Path, required: Optional[List[str]] = None):
        self.model_dir = Path(model_dir)
        self.required = list(required or [])
        self.logger = get_logger("model_assets")

    def path_for(self, name: str) -> Optional[Path]:
        """Filesystem path of a model asset, or None when it is absent."""
        path = self.model_dir / name
        if name == TAGGER_LABELS and not path.exists():
            csv_path = self.model_dir / TAGGER_LABELS_CSV
            return csv_path if csv_path.exists() else None
        return path if path.exists() else None

    def tag_labels(self) -> List[str]:
        """Ordered descriptive-tagger vocabulary, index-aligned with its output."""
        path = self.path_for(TAGGER_LABELS)
        if path is None:
            return []

        try:
            if path.suffix == ".csv":
                with path.open(newline="", encoding="utf-8") as f:
                    return [row["name"] for row in csv.DictReader(f)]
            labels = json.loads(path.read_text(encoding="utf-8"))
            return [str(label) for label in labels]
        except (OSError, ValueError, KeyError) as e:
            self.logger.warning(f"⚠️  Failed to read tag labels from {path}: {e}")
            return []

    def missing_required(self) -> List[str]:
        return [name for name in self.required if self.path_for(name) is None]

    def check_models(self) -> Dict:
        """Readiness report for every known asset."""
        models = [
            {
                "name": label,
                "filename": filename,
                "required": filename in self.required,
                "downloaded": self.path_for(filename) is not None,
            }
            for filename, label in KNOWN_ASSETS.items()
        ]
        return {
            "all_ready": not self.missing_required(),
            "models": models,
        }
