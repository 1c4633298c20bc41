"""
Tests for the local scorers and Tier 1 orchestration.
"""

from types import SimpleNamespace

import numpy as np
import pytest
from PIL import Image

from conftest import FakeNsfwScorer, FakeTagScorer, write_jpeg
from vault_tagger.local_tagger import LocalInferenceTagger, ScorerSet, Tier1InitializationError
from vault_tagger.model_assets import BODY_MODEL, NSFW_MODEL, TAGGER_LABELS, TAGGER_MODEL, ModelAssets
from vault_tagger.models import ContentType, NsfwCategory
from vault_tagger.tagging_engine import (
    BODY_REGION_LABELS,
    BooruTagger,
    NsfwClassifier,
    TaggingEngineError,
    ZeroShotClassifier,
    map_body_regions,
    parse_nsfw_output,
    select_scores,
    zero_shot_scores,
)


class FakeSession:
    """Minimal stand-in for an inference session."""

    def __init__(self, output, output_names=("output",)):
        self.output = np.asarray(output, dtype=np.float32)
        self.output_names = output_names
        self.inputs = []

    def get_inputs(self):
        return [SimpleNamespace(name="input")]

    def get_outputs(self):
        return [SimpleNamespace(name=name) for name in self.output_names]

    def run(self, output_names, feeds):
        self.inputs.append(feeds)
        return [self.output for _ in self.output_names]


def with_session(scorer_class, session, **attributes):
    scorer = scorer_class.__new__(scorer_class)
    scorer.session = session
    scorer.input_name = "input"
    for name, value in attributes.items():
        setattr(scorer, name, value)
    return scorer


def test_parse_nsfw_output_maps_neutral_to_normal():
    prediction = parse_nsfw_output([0.0, 0.0, 5.0, 0.0, 0.0])

    assert prediction.category == NsfwCategory.NORMAL
    assert prediction.confidence == pytest.approx(np.exp(5) / (np.exp(5) + 4))


def test_parse_nsfw_output_accepts_batched_logits():
    prediction = parse_nsfw_output(np.array([[0.0, 0.0, 0.0, 6.0, 1.0]]))

    assert prediction.category == NsfwCategory.PORN


def test_select_scores():
    result = select_scores([0.9, 0.2, 0.5], ["a", "b", "c"], 0.35)

    assert [(t.label, round(t.confidence, 2)) for t in result] == [("a", 0.9), ("c", 0.5)]


def test_map_body_regions():
    scores = np.zeros(len(BODY_REGION_LABELS))
    scores[BODY_REGION_LABELS.index("FACE_F")] = 0.8
    scores[BODY_REGION_LABELS.index("EXPOSED_BREAST_M")] = 0.4

    result = map_body_regions(scores)

    assert [(t.label, round(t.confidence, 2)) for t in result] == [("female face", 0.8)]


def test_zero_shot_scores_rescale_cosine():
    text_embeddings = {
        "match": np.array([1.0, 0.0]),
        "orthogonal": np.array([0.0, 1.0]),
        "opposite": np.array([-1.0, 0.0]),
    }

    result = zero_shot_scores(np.array([2.0, 0.0]), text_embeddings)

    assert [t.label for t in result] == ["match"]
    assert result[0].confidence == pytest.approx(1.0)


def test_zero_shot_scores_top_k():
    text_embeddings = {f"tag-{i}": np.array([1.0, i * 0.01]) for i in range(20)}

    result = zero_shot_scores(np.array([1.0, 0.0]), text_embeddings, top_k=5)

    assert [t.label for t in result] == [f"tag-{i}" for i in range(5)]


def test_nsfw_classifier_preprocessing():
    session = FakeSession([[0.0, 0.0, 0.0, 0.0, 4.0]])
    scorer = with_session(NsfwClassifier, session)

    prediction = scorer.classify(Image.new("RGB", (640, 360), "white"))

    tensor = session.inputs[0]["input"]
    assert tensor.shape == (1, 224, 224, 3)
    assert tensor.max() <= 1.0
    assert prediction.category == NsfwCategory.SEXY


def test_booru_tagger_uses_bgr_448():
    session = FakeSession([[0.9, 0.1]])
    scorer = with_session(BooruTagger, session, labels=["smile", "bed"], threshold=0.35)

    tags = scorer.predict_tags(Image.new("RGB", (100, 100), (255, 0, 0)))

    tensor = session.inputs[0]["input"]
    assert tensor.shape == (1, 448, 448, 3)
    assert tensor[0, 0, 0, 2] == pytest.approx(1.0)
    assert tensor[0, 0, 0, 0] == pytest.approx(0.0)
    assert [t.label for t in tags] == ["smile"]


def test_booru_tagger_requires_labels(tmp_path):
    with pytest.raises(TaggingEngineError):
        BooruTagger(tmp_path / "wd-tagger-v3.onnx", [])


def test_zero_shot_classifier_prefers_image_embeds():
    session = FakeSession([1.0, 0.0], output_names=("last_hidden_state", "image_embeds"))
    scorer = with_session(
        ZeroShotClassifier,
        session,
        text_embeddings={"real person": np.array([1.0, 0.0]), "anime": np.array([-1.0, 0.0])},
    )

    tags = scorer.predict_tags(Image.new("RGB", (300, 200), "gray"))

    assert session.inputs[0]["input"].shape == (1, 3, 224, 224)
    assert [t.label for t in tags] == ["real person"]


class BrokenScorer:
    def predict_tags(self, image):
        raise TaggingEngineError("inference failed")


@pytest.fixture
def assets(settings):
    return ModelAssets(settings.get_model_dir(), settings.required_models)


@pytest.fixture
def frames(tmp_path):
    return [str(write_jpeg(tmp_path / f"frame_{i}.jpg")) for i in range(2)]


@pytest.mark.asyncio
async def test_initialize_with_injected_scorers(assets, settings):
    tagger = LocalInferenceTagger(assets, settings, scorers=ScorerSet(nsfw=FakeNsfwScorer()))

    await tagger.initialize()

    assert tagger.tier1_available is True


@pytest.mark.asyncio
async def test_initialize_without_any_scorer_fails(assets, settings):
    tagger = LocalInferenceTagger(assets, settings, scorers=ScorerSet())

    with pytest.raises(Tier1InitializationError):
        await tagger.initialize()
    assert tagger.tier1_available is False


@pytest.mark.asyncio
async def test_initialize_reports_missing_required_models(assets, settings):
    tagger = LocalInferenceTagger(assets, settings)

    with pytest.raises(Tier1InitializationError, match="nsfw-classifier.onnx"):
        await tagger.initialize()


@pytest.mark.asyncio
async def test_unloadable_required_model_fails(tmp_path, settings):
    model_dir = tmp_path / "models"
    model_dir.mkdir()
    (model_dir / NSFW_MODEL).write_bytes(b"not a model")
    tagger = LocalInferenceTagger(ModelAssets(model_dir, [NSFW_MODEL]), settings)

    with pytest.raises(Tier1InitializationError):
        await tagger.initialize()


@pytest.mark.asyncio
async def test_unloadable_optional_model_is_skipped(tmp_path, settings):
    model_dir = tmp_path / "models"
    model_dir.mkdir()
    (model_dir / BODY_MODEL).write_bytes(b"not a model")
    tagger = LocalInferenceTagger(ModelAssets(model_dir, []), settings)

    # The only present model is optional and broken, so nothing loads
    with pytest.raises(Tier1InitializationError, match="No local scorers"):
        await tagger.initialize()


@pytest.mark.asyncio
async def test_process_frames_aggregates(assets, settings, frames):
    scorers = ScorerSet(
        nsfw=FakeNsfwScorer(NsfwCategory.PORN, 0.9),
        tagger=FakeTagScorer([("smile", 0.7), ("1girl", 0.95)]),
        body=FakeTagScorer([("female face", 0.8)]),
    )
    tagger = LocalInferenceTagger(assets, settings, scorers=scorers)

    result = await tagger.process_frames(frames)

    tags = {t.label: t.confidence for t in result.tags}
    assert result.nsfw_category == NsfwCategory.PORN
    assert result.content_type == ContentType.REAL
    assert tags["smile"] == pytest.approx(0.805)
    assert "1girl" not in tags
    assert tags["category:female"] == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_unusable_frames_are_skipped(assets, settings, frames, tmp_path):
    garbage = tmp_path / "garbage.jpg"
    garbage.write_bytes(b"\x00" * 4096)
    scorers = ScorerSet(tagger=FakeTagScorer([("smile", 0.5)]))
    tagger = LocalInferenceTagger(assets, settings, scorers=scorers)

    result = await tagger.process_frames(frames + [str(garbage), str(tmp_path / "missing.jpg")])

    # Two of four frames scored: frequency 0.5, average 0.5
    assert [t.label for t in result.tags] == ["smile"]


@pytest.mark.asyncio
async def test_failing_scorer_keeps_other_scorer_outputs(assets, settings, frames):
    scorers = ScorerSet(
        nsfw=FakeNsfwScorer(NsfwCategory.PORN, 0.9),
        tagger=FakeTagScorer([("smile", 0.9)]),
        body=BrokenScorer(),
    )
    tagger = LocalInferenceTagger(assets, settings, scorers=scorers)

    result = await tagger.process_frames(frames)

    assert result.nsfw_category == NsfwCategory.PORN
    assert result.nsfw_confidence == pytest.approx(0.9)
    assert "smile" in [t.label for t in result.tags]


@pytest.mark.asyncio
async def test_frame_with_every_scorer_failing_adds_nothing(assets, settings, frames):
    tagger = LocalInferenceTagger(assets, settings, scorers=ScorerSet(tagger=BrokenScorer(), body=BrokenScorer()))

    result = await tagger.process_frames(frames)

    assert result.tags == []
    assert result.nsfw_category == NsfwCategory.NORMAL


def test_tag_labels_fall_back_to_csv(tmp_path):
    (tmp_path / "selected_tags.csv").write_text("tag_id,name,category\n1,smile,0\n2,bed,0\n", encoding="utf-8")
    assets = ModelAssets(tmp_path, [TAGGER_LABELS])

    assert assets.tag_labels() == ["smile", "bed"]
    assert assets.missing_required() == []


def test_check_models_report(tmp_path):
    (tmp_path / NSFW_MODEL).write_bytes(b"x")
    assets = ModelAssets(tmp_path, [NSFW_MODEL, TAGGER_MODEL])

    report = assets.check_models()

    by_file = {model["filename"]: model for model in report["models"]}
    assert report["all_ready"] is False
    assert by_file[NSFW_MODEL]["downloaded"] is True
    assert by_file[TAGGER_MODEL]["required"] is True
    assert by_file[BODY_MODEL]["required"] is False
