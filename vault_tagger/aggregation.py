"""
Cross-frame aggregation of local scorer outputs.

Everything here is pure: frame analyses and thresholds in, one Tier1Result
out. The steps run in a fixed order (accumulate, NSFW verdict, content type,
inclusion gates, meta-tag suppression, boost, category tags, NSFW category
tags, rank and truncate).
"""

from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from .models import ContentType, FrameAnalysis, NsfwCategory, NsfwPrediction, TagScore, Tier1Result

# Labels that make no sense for photographed people: booru counting
# conventions, art medium, impossible anatomy, unnatural hair and eye colors.
ANIME_META_TAGS = frozenset([
    "1girl", "2girls", "3girls", "4girls", "5girls", "6+girls",
    "1boy", "2boys", "3boys", "4boys", "5boys", "6+boys",
    "1other", "multiple girls", "multiple boys",
    "solo", "duo",

    "highres", "absurdres", "incredibly absurdres",
    "simple background", "white background", "black background",
    "transparent background", "gradient background",
    "sketch", "lineart", "line art", "traditional media", "digital media",
    "watercolor", "oil painting", "pastel", "pencil", "marker",
    "pixel art", "3d render", "cg", "cgi",
    "official art", "key visual", "concept art", "cover",

    "chibi", "kemonomimi mode", "animal ears", "cat ears", "fox ears",
    "dog ears", "bunny ears", "wolf ears", "horse ears",
    "tail", "cat tail", "fox tail", "dog tail", "bunny tail",
    "wings", "demon wings", "angel wings", "fairy wings", "feathered wings",
    "horns", "demon horns", "dragon horns",
    "anime eyes", "huge eyes", "blush stickers",
    "glowing eyes", "empty eyes", "crazy eyes", "heart-shaped pupils",
    "elf ears", "pointy ears",

    "blue hair", "green hair", "pink hair", "purple hair", "white hair",
    "silver hair", "multicolored hair", "gradient hair",
    "two-tone hair", "streaked hair", "rainbow hair", "aqua hair",
    "orange hair",

    "red eyes", "yellow eyes", "purple eyes", "pink eyes",
    "orange eyes", "heterochromia", "multicolored eyes",

    "anime style", "manga style", "doujinshi", "visual novel",
])

# Photographic descriptors the descriptive tagger tends to under-score
REAL_CONTENT_BOOST_TAGS = frozenset([
    "breasts", "large breasts", "huge breasts", "medium breasts", "small breasts",
    "ass", "thighs", "thick thighs", "wide hips", "narrow waist",
    "nipples", "areolae", "cleavage", "navel", "midriff",
    "lips", "parted lips", "teeth", "tongue", "tongue out",

    "long hair", "short hair", "medium hair", "ponytail", "twintails",
    "blonde hair", "brown hair", "black hair", "red hair", "dark hair",
    "bangs", "straight hair", "wavy hair", "curly hair",

    "bikini", "underwear", "lingerie", "bra", "panties", "thong",
    "nude", "naked", "topless", "bottomless", "completely nude",
    "dress", "skirt", "shorts", "jeans", "leggings",
    "high heels", "stockings", "thighhighs", "fishnets", "garter belt",
    "jewelry", "necklace", "earrings", "choker", "collar",

    "lying", "sitting", "standing", "kneeling", "on back", "on stomach",
    "spread legs", "crossed legs", "bent over", "arched back",
    "hands on hips", "arms up", "arms behind back",
    "masturbation", "fingering", "penetration", "oral", "sex",
    "blowjob", "handjob", "titjob", "footjob", "anal",
    "cum", "facial", "creampie", "cumshot",

    "pov", "from behind", "from above", "from below", "from side",
    "close-up", "portrait", "full body", "upper body", "lower body",
    "cowboy shot", "looking at viewer", "eye contact",

    "smile", "smiling", "open mouth", "closed eyes", "wink",
    "ahegao", "orgasm", "pleasure", "moaning",

    "indoors", "outdoors", "bedroom", "bathroom", "pool", "beach",
    "bed", "couch", "shower", "bathtub",
])

NSFW_CATEGORY_TAGS: Dict[NsfwCategory, List[str]] = {
    NsfwCategory.PORN: ["explicit", "nsfw", "adult content", "real", "live action"],
    NsfwCategory.SEXY: ["sensual", "suggestive", "nsfw", "real", "live action"],
    NsfwCategory.HENTAI: ["hentai", "anime", "explicit", "nsfw", "animated", "2d"],
    NsfwCategory.DRAWINGS: ["illustration", "artwork", "drawn", "animated", "2d"],
    NsfwCategory.NORMAL: ["sfw"],
}

RATING_CATEGORY_TAGS = {
    NsfwCategory.NORMAL: "category:sfw",
    NsfwCategory.SEXY: "category:suggestive",
    NsfwCategory.PORN: "category:explicit",
    NsfwCategory.HENTAI: "category:explicit",
}

FEMALE_PART_TAGS = {"exposed breasts", "covered breasts", "exposed pussy", "covered pussy"}
MALE_PART_TAGS = {"male chest", "exposed penis"}
SUBJECT_COUNT_TAGS = ["solo", "couple", "group"]
BODY_TYPE_TAGS = ["slim", "athletic", "curvy", "plus size"]

GENDER_FALLBACK_CONFIDENCE = 0.7
SUBJECT_COUNT_CONFIDENCE = 0.8
CONTENT_TYPE_CONFIDENCE = 0.9


class AggregationThresholds(BaseModel):
    """Tunable gates used when fusing per-frame labels."""
    frequency: float = 0.3
    high_confidence: float = 0.8
    min_confidence: float = 0.35
    boosted_min_confidence: float = 0.25
    boost_factor: float = 1.15
    content_type_confidence: float = 0.6
    nsfw_tags_confidence: float = 0.5
    max_tags: int = 60


class LabelStats(BaseModel):
    """Running confidence totals for one label across frames."""
    sum: float = 0.0
    count: int = 0
    max: float = 0.0
    source: str

    @property
    def average(self) -> float:
        return self.sum / self.count if self.count else 0.0


def normalize_for_lists(label: str) -> str:
    return label.lower().replace("_", " ")


def accumulate_labels(frames: Iterable[FrameAnalysis]) -> Dict[str, LabelStats]:
    """Collect {sum, count, max} per distinct label, remembering its first scorer."""
    stats: Dict[str, LabelStats] = {}
    for frame in frames:
        for source, predictions in (("tagger", frame.tags), ("body", frame.body), ("zero_shot", frame.zero_shot)):
            for prediction in predictions:
                entry = stats.get(prediction.label)
                if entry is None:
                    entry = stats[prediction.label] = LabelStats(source=source)
                entry.sum += prediction.confidence
                entry.count += 1
                entry.max = max(entry.max, prediction.confidence)
    return stats


def pick_nsfw(predictions: Iterable[Optional[NsfwPrediction]]) -> Tuple[NsfwCategory, float]:
    """The single strongest frame verdict decides the item category."""
    category = NsfwCategory.NORMAL
    confidence = 0.0
    for prediction in predictions:
        if prediction is not None and prediction.confidence > confidence:
            category = prediction.category
            confidence = prediction.confidence
    return category, confidence


def decide_content_type(category: NsfwCategory, confidence: float, threshold: float = 0.6) -> ContentType:
    if confidence < threshold:
        return ContentType.UNKNOWN
    if category in (NsfwCategory.HENTAI, NsfwCategory.DRAWINGS):
        return ContentType.ANIME
    if category in (NsfwCategory.PORN, NsfwCategory.SEXY):
        return ContentType.REAL
    return ContentType.UNKNOWN


def filter_and_rank(
    label_stats: Dict[str, LabelStats],
    frame_count: int,
    content_type: ContentType,
    nsfw_category: NsfwCategory,
    nsfw_confidence: float,
    thresholds: Optional[AggregationThresholds] = None,
) -> List[TagScore]:
    """Apply the inclusion gates, suppression, boost and synthesized tags."""
    thresholds = thresholds or AggregationThresholds()
    is_real = content_type == ContentType.REAL
    tags: List[TagScore] = []

    for label, entry in label_stats.items():
        list_key = normalize_for_lists(label)
        if is_real and list_key in ANIME_META_TAGS:
            continue

        boosted = is_real and list_key in REAL_CONTENT_BOOST_TAGS
        min_confidence = thresholds.boosted_min_confidence if boosted else thresholds.min_confidence
        frequency = entry.count / frame_count if frame_count else 0.0
        average = entry.average

        if (frequency >= thresholds.frequency or entry.max >= thresholds.high_confidence) and average >= min_confidence:
            confidence = min(1.0, average * thresholds.boost_factor) if boosted else average
            tags.append(TagScore(label=label, confidence=confidence))

    _merge_unique(tags, category_tags(tags, content_type, nsfw_category, nsfw_confidence))

    if nsfw_confidence > thresholds.nsfw_tags_confidence:
        _merge_unique(tags, [
            TagScore(label=label, confidence=nsfw_confidence)
            for label in NSFW_CATEGORY_TAGS.get(nsfw_category, [])
        ])

    tags.sort(key=lambda t: t.confidence, reverse=True)
    return tags[:thresholds.max_tags]


def category_tags(
    tags: List[TagScore],
    content_type: ContentType,
    nsfw_category: NsfwCategory,
    nsfw_confidence: float,
) -> List[TagScore]:
    """Synthesize ``category:*`` tags from already aggregated labels."""
    lowered = [(t.label.lower(), t) for t in tags]
    by_label = dict(reversed(lowered))
    results = []

    female = next((t for label, t in lowered if "female" in label.split()), None)
    if female or any(label in FEMALE_PART_TAGS for label, _ in lowered):
        results.append(TagScore(
            label="category:female",
            confidence=female.confidence if female else GENDER_FALLBACK_CONFIDENCE,
        ))

    male = next((t for label, t in lowered if "male" in label.split()), None)
    if male or any(label in MALE_PART_TAGS for label, _ in lowered):
        results.append(TagScore(
            label="category:male",
            confidence=male.confidence if male else GENDER_FALLBACK_CONFIDENCE,
        ))

    for subject in SUBJECT_COUNT_TAGS:
        if subject in by_label:
            results.append(TagScore(label=f"category:{subject}", confidence=SUBJECT_COUNT_CONFIDENCE))

    for body_type in BODY_TYPE_TAGS:
        match = by_label.get(body_type)
        if match:
            results.append(TagScore(label=f"category:{body_type.replace(' ', '-')}", confidence=match.confidence))

    rating = RATING_CATEGORY_TAGS.get(nsfw_category)
    if rating and nsfw_confidence > 0:
        results.append(TagScore(label=rating, confidence=nsfw_confidence))

    if content_type == ContentType.ANIME:
        results.append(TagScore(label="category:animated", confidence=CONTENT_TYPE_CONFIDENCE))
    elif content_type == ContentType.REAL:
        results.append(TagScore(label="category:live-action", confidence=CONTENT_TYPE_CONFIDENCE))

    return results


def aggregate_frames(
    frames: List[FrameAnalysis],
    frame_count: Optional[int] = None,
    thresholds: Optional[AggregationThresholds] = None,
) -> Tier1Result:
    """Fuse per-frame scorer outputs into one item-level result.

    ``frame_count`` is the number of frames handed to the tagger; frames that
    produced nothing still count against label frequency.
    """
    thresholds = thresholds or AggregationThresholds()
    frame_count = frame_count if frame_count is not None else len(frames)

    label_stats = accumulate_labels(frames)
    nsfw_category, nsfw_confidence = pick_nsfw(frame.nsfw for frame in frames)
    content_type = decide_content_type(nsfw_category, nsfw_confidence, thresholds.content_type_confidence)
    tags = filter_and_rank(label_stats, frame_count, content_type, nsfw_category, nsfw_confidence, thresholds)

    return Tier1Result(
        nsfw_category=nsfw_category,
        nsfw_confidence=nsfw_confidence,
        tags=tags,
        content_type=content_type,
    )


def _merge_unique(tags: List[TagScore], additions: Iterable[TagScore]) -> None:
    seen = {t.label.lower() for t in tags}
    for tag in additions:
        if tag.label.lower() not in seen:
            tags.append(tag)
            seen.add(tag.label.lower())
