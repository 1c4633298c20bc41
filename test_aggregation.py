"""
Tests for cross-frame aggregation of local scorer outputs.
"""

import pytest

from vault_tagger.aggregation import (
    AggregationThresholds,
    accumulate_labels,
    aggregate_frames,
    category_tags,
    decide_content_type,
    pick_nsfw,
)
from vault_tagger.models import ContentType, FrameAnalysis, NsfwCategory, NsfwPrediction, TagScore


def frame(nsfw=None, tags=(), body=(), zero_shot=()):
    return FrameAnalysis(
        nsfw=NsfwPrediction(category=nsfw[0], confidence=nsfw[1]) if nsfw else None,
        tags=[TagScore(label=label, confidence=conf) for label, conf in tags],
        body=[TagScore(label=label, confidence=conf) for label, conf in body],
        zero_shot=[TagScore(label=label, confidence=conf) for label, conf in zero_shot],
    )


def labels(result):
    return {tag.label: tag.confidence for tag in result.tags}


def test_label_in_half_the_frames_is_kept():
    frames = [
        frame(tags=[("label-x", 0.9)]),
        frame(tags=[("label-x", 0.9)]),
        frame(),
        frame(),
    ]

    result = aggregate_frames(frames)

    assert labels(result) == {"label-x": pytest.approx(0.9)}
    assert result.nsfw_category == NsfwCategory.NORMAL
    assert result.nsfw_confidence == 0.0
    assert result.content_type == ContentType.UNKNOWN


def test_frames_without_output_count_against_frequency():
    frames = [frame(tags=[("label-x", 0.7)])]

    assert labels(aggregate_frames(frames, frame_count=1)) == {"label-x": pytest.approx(0.7)}
    assert labels(aggregate_frames(frames, frame_count=4)) == {}


def test_rare_label_needs_high_peak():
    frames = [frame(tags=[("rare", 0.85)]), frame(), frame(), frame()]
    assert "rare" in labels(aggregate_frames(frames))

    frames = [frame(tags=[("rare", 0.79)]), frame(), frame(), frame()]
    assert "rare" not in labels(aggregate_frames(frames))


def test_low_average_is_excluded():
    frames = [frame(tags=[("weak", 0.3)]), frame(tags=[("weak", 0.3)]), frame(), frame()]
    assert "weak" not in labels(aggregate_frames(frames))


def test_strongest_nsfw_frame_wins():
    frames = [
        frame(nsfw=(NsfwCategory.PORN, 0.9)),
        frame(nsfw=(NsfwCategory.SEXY, 0.4)),
        frame(nsfw=(NsfwCategory.PORN, 0.95)),
        frame(nsfw=(NsfwCategory.NORMAL, 0.3)),
    ]

    result = aggregate_frames(frames)

    assert result.nsfw_category == NsfwCategory.PORN
    assert result.nsfw_confidence == pytest.approx(0.95)
    assert result.content_type == ContentType.REAL


def test_pick_nsfw_without_predictions():
    assert pick_nsfw([None, None]) == (NsfwCategory.NORMAL, 0.0)


@pytest.mark.parametrize("category,confidence,expected", [
    (NsfwCategory.HENTAI, 0.6, ContentType.ANIME),
    (NsfwCategory.HENTAI, 0.59, ContentType.UNKNOWN),
    (NsfwCategory.DRAWINGS, 0.7, ContentType.ANIME),
    (NsfwCategory.PORN, 0.6, ContentType.REAL),
    (NsfwCategory.SEXY, 0.99, ContentType.REAL),
    (NsfwCategory.SEXY, 0.5999, ContentType.UNKNOWN),
    (NsfwCategory.NORMAL, 0.99, ContentType.UNKNOWN),
])
def test_content_type_threshold(category, confidence, expected):
    assert decide_content_type(category, confidence) == expected


def test_anime_meta_tags_suppressed_for_real_content():
    frames = [frame(nsfw=(NsfwCategory.PORN, 0.9), tags=[("1girl", 0.99), ("multiple_girls", 0.9)])] * 2

    assert "1girl" not in labels(aggregate_frames(frames))
    assert "multiple_girls" not in labels(aggregate_frames(frames))


def test_anime_meta_tags_kept_for_anime_content():
    frames = [frame(nsfw=(NsfwCategory.HENTAI, 0.9), tags=[("1girl", 0.99)])] * 2

    assert labels(aggregate_frames(frames))["1girl"] == pytest.approx(0.99)


def test_real_content_boost():
    frames = [
        frame(nsfw=(NsfwCategory.PORN, 0.9), tags=[("breasts", 0.9), ("large_breasts", 0.6)]),
        frame(nsfw=(NsfwCategory.PORN, 0.8), tags=[("breasts", 0.9), ("large_breasts", 0.6)]),
    ]

    result = labels(aggregate_frames(frames))

    assert result["breasts"] == pytest.approx(1.0)
    assert result["large_breasts"] == pytest.approx(0.69)


def test_boosted_labels_use_lower_floor():
    frames = [frame(nsfw=(NsfwCategory.PORN, 0.9), tags=[("thighs", 0.3), ("tattoo", 0.3)])] * 2

    result = labels(aggregate_frames(frames))

    assert result["thighs"] == pytest.approx(0.345)
    assert "tattoo" not in result


def test_no_boost_when_content_type_unknown():
    frames = [frame(nsfw=(NsfwCategory.PORN, 0.5), tags=[("breasts", 0.9)])] * 2

    assert labels(aggregate_frames(frames))["breasts"] == pytest.approx(0.9)


def test_category_and_nsfw_tags():
    frames = [
        frame(
            nsfw=(NsfwCategory.PORN, 0.9),
            body=[("female face", 0.85)],
            zero_shot=[("couple", 0.7), ("curvy", 0.65)],
        ),
    ] * 2

    result = labels(aggregate_frames(frames))

    assert result["category:female"] == pytest.approx(0.85)
    assert result["category:couple"] == pytest.approx(0.8)
    assert result["category:curvy"] == pytest.approx(0.65)
    assert result["category:explicit"] == pytest.approx(0.9)
    assert result["category:live-action"] == pytest.approx(0.9)
    for tag in ("explicit", "nsfw", "adult content", "real", "live action"):
        assert result[tag] == pytest.approx(0.9)
    assert "category:male" not in result


def test_male_only_labels_do_not_imply_female():
    tags = [TagScore(label="male chest", confidence=0.9), TagScore(label="male face", confidence=0.8)]

    result = {t.label: t.confidence for t in category_tags(tags, ContentType.REAL, NsfwCategory.PORN, 0.9)}

    assert "category:female" not in result
    assert result["category:male"] == pytest.approx(0.9)


def test_body_part_fallback_confidence():
    tags = [TagScore(label="exposed breasts", confidence=0.9)]

    result = {t.label: t.confidence for t in category_tags(tags, ContentType.UNKNOWN, NsfwCategory.NORMAL, 0.0)}

    assert result == {"category:female": pytest.approx(0.7)}


def test_nsfw_category_tags_need_confidence_above_half():
    frames = [frame(nsfw=(NsfwCategory.SEXY, 0.5))]

    result = labels(aggregate_frames(frames))

    assert "suggestive" not in result
    assert result["category:suggestive"] == pytest.approx(0.5)


def test_anime_category_tags():
    frames = [frame(nsfw=(NsfwCategory.HENTAI, 0.8))]

    result = labels(aggregate_frames(frames))

    assert result["category:animated"] == pytest.approx(0.9)
    assert result["hentai"] == pytest.approx(0.8)
    assert result["2d"] == pytest.approx(0.8)


def test_output_sorted_and_capped():
    tags = [(f"label-{i}", 0.4 + i * 0.005) for i in range(100)]
    frames = [frame(tags=tags)] * 2

    result = aggregate_frames(frames)

    confidences = [tag.confidence for tag in result.tags]
    assert len(result.tags) == 60
    assert confidences == sorted(confidences, reverse=True)
    assert result.tags[0].label == "label-99"


def test_custom_tag_cap():
    frames = [frame(tags=[(f"label-{i}", 0.9) for i in range(10)])]

    result = aggregate_frames(frames, thresholds=AggregationThresholds(max_tags=3))

    assert len(result.tags) == 3


def test_first_scorer_is_recorded_as_source():
    frames = [
        frame(body=[("ass", 0.8)]),
        frame(tags=[("ass", 0.6)], body=[("ass", 0.7)]),
    ]

    stats = accumulate_labels(frames)

    assert stats["ass"].source == "body"
    assert stats["ass"].count == 3
    assert stats["ass"].max == pytest.approx(0.8)
    assert stats["ass"].average == pytest.approx(0.7)


def test_aggregate_is_deterministic():
    frames = [
        frame(nsfw=(NsfwCategory.PORN, 0.9), tags=[("bed", 0.7), ("smile", 0.6)], body=[("female face", 0.8)]),
        frame(nsfw=(NsfwCategory.SEXY, 0.6), tags=[("bed", 0.5)]),
    ]

    assert aggregate_frames(frames) == aggregate_frames(frames)
