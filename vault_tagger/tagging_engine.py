"""
ONNX scorers used by the local (Tier 1) tagger.

Each scorer wraps one model session and turns a single frame into either an
NSFW verdict or a sparse list of labels. Output parsing is kept in plain
functions so it can be exercised without the models installed.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
from PIL import Image, ImageOps

from .logging import get_logger
from .models import NsfwCategory, NsfwPrediction, TagScore

# NSFW categorizer output order
NSFW_CLASSES = ["drawings", "hentai", "neutral", "porn", "sexy"]

TAGGER_THRESHOLD = 0.35
BODY_THRESHOLD = 0.5
ZERO_SHOT_THRESHOLD = 0.5
ZERO_SHOT_TOP_K = 10

BODY_REGION_LABELS = [
    "EXPOSED_ANUS", "EXPOSED_ARMPITS", "COVERED_BELLY", "EXPOSED_BELLY",
    "COVERED_BUTTOCKS", "EXPOSED_BUTTOCKS", "FACE_F", "FACE_M",
    "COVERED_FEET", "EXPOSED_FEET", "COVERED_BREAST_F", "EXPOSED_BREAST_F",
    "COVERED_GENITALIA_F", "EXPOSED_GENITALIA_F", "EXPOSED_BREAST_M",
    "EXPOSED_GENITALIA_M",
]

BODY_REGION_TAGS = {
    "EXPOSED_ANUS": "anal",
    "EXPOSED_ARMPITS": "armpits",
    "COVERED_BELLY": "belly",
    "EXPOSED_BELLY": "exposed belly",
    "COVERED_BUTTOCKS": "ass",
    "EXPOSED_BUTTOCKS": "exposed ass",
    "FACE_F": "female face",
    "FACE_M": "male face",
    "COVERED_FEET": "feet",
    "EXPOSED_FEET": "bare feet",
    "COVERED_BREAST_F": "covered breasts",
    "EXPOSED_BREAST_F": "exposed breasts",
    "COVERED_GENITALIA_F": "covered pussy",
    "EXPOSED_GENITALIA_F": "exposed pussy",
    "EXPOSED_BREAST_M": "male chest",
    "EXPOSED_GENITALIA_M": "exposed penis",
}

# Zero-shot prompt bank: category -> {prompt: tag}
ZERO_SHOT_PROMPTS: Dict[str, Dict[str, str]] = {
    "content_type": {
        "a photograph of a real person": "real person",
        "an anime or cartoon illustration": "anime",
        "a 3D rendered image": "3d render",
        "a drawing or artwork": "artwork",
    },
    "setting": {
        "bedroom scene": "bedroom",
        "bathroom scene": "bathroom",
        "outdoor scene": "outdoors",
        "living room scene": "living room",
        "office scene": "office",
        "studio photo": "studio",
        "beach scene": "beach",
        "pool scene": "pool",
        "shower scene": "shower",
    },
    "shot_type": {
        "close-up shot": "close-up",
        "medium shot": "medium shot",
        "full body shot": "full body",
        "portrait shot": "portrait",
        "POV shot": "pov",
        "selfie": "selfie",
    },
    "subject_count": {
        "one person alone": "solo",
        "two people together": "couple",
        "group of people": "group",
    },
    "clothing": {
        "fully clothed person": "clothed",
        "partially clothed person": "partially clothed",
        "person in underwear or bikini": "underwear",
        "nude person": "nude",
    },
    "hair_color": {
        "blonde hair": "blonde",
        "brunette hair": "brunette",
        "black hair": "black hair",
        "red hair": "redhead",
        "gray hair": "gray hair",
    },
    "body_type": {
        "slim body type": "slim",
        "athletic body type": "athletic",
        "curvy body type": "curvy",
        "plus size body type": "plus size",
    },
}

CLIP_MEAN = np.array([0.48145466, 0.4578275, 0.40821073], dtype=np.float32)
CLIP_STD = np.array([0.26862954, 0.26130258, 0.27577711], dtype=np.float32)
CLIP_CONTEXT_LENGTH = 77


class TaggingEngineError(Exception):
    """Custom exception for scorer load and inference errors."""
    pass


def load_frame(path: str) -> Image.Image:
    """Open a frame as an RGB image."""
    try:
        with Image.open(path) as image:
            image.load()
            return image.convert("RGB")
    except (OSError, ValueError) as e:
        raise TaggingEngineError(f"Unreadable frame {path}: {e}")


def fit_pixels(image: Image.Image, size: int) -> np.ndarray:
    """Center-crop and resize to a square, returning HWC float32 in [0, 1]."""
    fitted = ImageOps.fit(image, (size, size), method=Image.Resampling.BICUBIC)
    return np.asarray(fitted, dtype=np.float32) / 255.0


def softmax(logits: Sequence[float]) -> np.ndarray:
    values = np.asarray(logits, dtype=np.float64)
    exp = np.exp(values - values.max())
    return exp / exp.sum()


def parse_nsfw_output(logits: Sequence[float]) -> NsfwPrediction:
    """Softmax over the five raw classes, reporting "neutral" as "normal"."""
    probabilities = softmax(np.asarray(logits).reshape(-1)[:len(NSFW_CLASSES)])
    index = int(np.argmax(probabilities))
    category = NSFW_CLASSES[index]
    if category == "neutral":
        category = "normal"
    return NsfwPrediction(category=NsfwCategory(category), confidence=float(probabilities[index]))


def select_scores(scores: Sequence[float], labels: Sequence[str], threshold: float) -> List[TagScore]:
    """Keep labels whose score reaches the threshold, best first."""
    results = [
        TagScore(label=label, confidence=float(score))
        for score, label in zip(np.asarray(scores).reshape(-1), labels)
        if score >= threshold
    ]
    return sorted(results, key=lambda t: t.confidence, reverse=True)


def map_body_regions(scores: Sequence[float], threshold: float = BODY_THRESHOLD) -> List[TagScore]:
    """Translate detector classes into readable tags."""
    results = []
    for prediction in select_scores(scores, BODY_REGION_LABELS, threshold):
        tag = BODY_REGION_TAGS.get(prediction.label)
        if tag:
            results.append(TagScore(label=tag, confidence=prediction.confidence))
    return results


def zero_shot_scores(
    image_embedding: np.ndarray,
    text_embeddings: Dict[str, np.ndarray],
    threshold: float = ZERO_SHOT_THRESHOLD,
    top_k: int = ZERO_SHOT_TOP_K,
) -> List[TagScore]:
    """Cosine similarity against the prompt bank, mapped onto [0, 1]."""
    image_vector = np.asarray(image_embedding, dtype=np.float64).reshape(-1)
    image_vector = image_vector / (np.linalg.norm(image_vector) or 1.0)

    results = []
    for tag, text_embedding in text_embeddings.items():
        text_vector = np.asarray(text_embedding, dtype=np.float64).reshape(-1)
        text_vector = text_vector / (np.linalg.norm(text_vector) or 1.0)
        length = min(len(image_vector), len(text_vector))
        similarity = float(np.dot(image_vector[:length], text_vector[:length]))
        score = (similarity + 1) / 2
        if score > threshold:
            results.append(TagScore(label=tag, confidence=score))

    results.sort(key=lambda t: t.confidence, reverse=True)
    return results[:top_k]


class BaseScorer:
    """Base class for a single-session ONNX scorer."""

    name = "base"

    def __init__(self, model_path: Path, intra_op_threads: int = 2, inter_op_threads: int = 1):
        self.logger = get_logger("tagging_engine")
        self.model_path = Path(model_path)
        self.intra_op_threads = intra_op_threads
        self.inter_op_threads = inter_op_threads
        self.session = self._create_session(self.model_path)
        self.input_name = self.session.get_inputs()[0].name
        self.logger.info(f"🧠 {self.name} loaded (input: {self.input_name})")

    def _create_session(self, path: Path):
        """Load an inference session for the given model file."""
        try:
            # Import here to avoid issues if not installed
            import onnxruntime as ort
        except ImportError:
            raise TaggingEngineError("onnxruntime package not installed. Run: pip install onnxruntime")

        try:
            options = ort.SessionOptions()
            options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
            options.intra_op_num_threads = self.intra_op_threads
            options.inter_op_num_threads = self.inter_op_threads
            return ort.InferenceSession(str(path), sess_options=options, providers=["CPUExecutionProvider"])
        except Exception as e:
            raise TaggingEngineError(f"Failed to load {self.name} model from {path}: {e}")

    def _run(self, tensor: np.ndarray) -> np.ndarray:
        try:
            outputs = self.session.run(None, {self.input_name: tensor})
        except Exception as e:
            raise TaggingEngineError(f"{self.name} inference failed: {e}")
        return np.asarray(outputs[0])


class NsfwClassifier(BaseScorer):
    """Five-way content rating classifier (224x224 RGB, NHWC)."""

    name = "NSFW classifier"

    def classify(self, image: Image.Image) -> NsfwPrediction:
        tensor = fit_pixels(image, 224)[np.newaxis, ...]
        return parse_nsfw_output(self._run(tensor))


class BooruTagger(BaseScorer):
    """Descriptive tagger over a fixed label vocabulary (448x448 BGR, NHWC)."""

    name = "WD tagger"

    def __init__(self, model_path: Path, labels: List[str], threshold: float = TAGGER_THRESHOLD, **kwargs):
        if not labels:
            raise TaggingEngineError("Descriptive tagger has no label vocabulary")
        self.labels = labels
        self.threshold = threshold
        super().__init__(model_path, **kwargs)

    def predict_tags(self, image: Image.Image) -> List[TagScore]:
        pixels = fit_pixels(image, 448)[..., ::-1]
        tensor = np.ascontiguousarray(pixels[np.newaxis, ...], dtype=np.float32)
        return select_scores(self._run(tensor), self.labels, self.threshold)


class BodyRegionDetector(BaseScorer):
    """Body-region classifier (224x224 RGB, NHWC)."""

    name = "NudeNet"

    def predict_tags(self, image: Image.Image) -> List[TagScore]:
        tensor = fit_pixels(image, 224)[np.newaxis, ...]
        return map_body_regions(self._run(tensor))


class ZeroShotClassifier(BaseScorer):
    """CLIP zero-shot classification against a fixed prompt bank."""

    name = "CLIP"

    def __init__(self, vision_path: Path, text_path: Path, tokenizer_path: Path, **kwargs):
        super().__init__(vision_path, **kwargs)
        self.text_session = self._create_session(Path(text_path))
        self.tokenizer = self._load_tokenizer(Path(tokenizer_path))
        self.text_embeddings = self._precompute_text_embeddings()

    def _load_tokenizer(self, path: Path):
        try:
            from tokenizers import Tokenizer
        except ImportError:
            raise TaggingEngineError("tokenizers package not installed. Run: pip install tokenizers")

        try:
            tokenizer = Tokenizer.from_file(str(path))
        except Exception as e:
            raise TaggingEngineError(f"Failed to load CLIP tokenizer from {path}: {e}")
        tokenizer.enable_truncation(max_length=CLIP_CONTEXT_LENGTH)
        tokenizer.enable_padding(length=CLIP_CONTEXT_LENGTH)
        return tokenizer

    def _precompute_text_embeddings(self) -> Dict[str, np.ndarray]:
        embeddings = {}
        for prompts in ZERO_SHOT_PROMPTS.values():
            for prompt, tag in prompts.items():
                try:
                    embeddings[tag] = self._embed_text(prompt)
                except TaggingEngineError as e:
                    self.logger.warning(f"⚠️  Failed to embed prompt '{prompt}': {e}")
        self.logger.info(f"🧠 Pre-computed {len(embeddings)} CLIP text embeddings")
        return embeddings

    def _embed_text(self, text: str) -> np.ndarray:
        encoding = self.tokenizer.encode(text)
        feeds = {}
        for model_input in self.text_session.get_inputs():
            if model_input.name == "input_ids":
                feeds["input_ids"] = np.array([encoding.ids], dtype=np.int64)
            elif model_input.name == "attention_mask":
                feeds["attention_mask"] = np.array([encoding.attention_mask], dtype=np.int64)
        try:
            outputs = self.text_session.run(None, feeds)
        except Exception as e:
            raise TaggingEngineError(f"CLIP text inference failed: {e}")
        return _preferred_output(self.text_session, outputs, "text_embeds")

    def predict_tags(self, image: Image.Image) -> List[TagScore]:
        if not self.text_embeddings:
            return []
        pixels = (fit_pixels(image, 224) - CLIP_MEAN) / CLIP_STD
        tensor = np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)
        try:
            outputs = self.session.run(None, {self.input_name: tensor})
        except Exception as e:
            raise TaggingEngineError(f"CLIP vision inference failed: {e}")
        image_embedding = _preferred_output(self.session, outputs, "image_embeds")
        return zero_shot_scores(image_embedding, self.text_embeddings)


def _preferred_output(session, outputs: List[np.ndarray], name: str) -> np.ndarray:
    names = [output.name for output in session.get_outputs()]
    index = names.index(name) if name in names else 0
    return np.asarray(outputs[index]).reshape(-1)


def create_scorer(factory, *args, **kwargs) -> Optional[BaseScorer]:
    """Build a scorer, returning None when its model cannot be loaded."""
    try:
        return factory(*args, **kwargs)
    except TaggingEngineError as e:
        get_logger("tagging_engine").warning(f"⚠️  {e}")
        return None
