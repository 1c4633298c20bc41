"""
Vocabulary resolution (Tier 3).

Maps free-form labels from Tier 1 and Tier 2 onto the curated tag vocabulary
through an exact, synonym, partial cascade. Labels that match nothing become
new-tag suggestions for human review.
"""

import re
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .logging import get_logger
from .models import MatchedTag, MatchType, NewTagSuggestion, Tag, TagScore, Tier3Result
from .performance_monitor import PerformanceMonitor

SYNONYM_PENALTY = 0.95
CONTAINMENT_PENALTY = 0.8
WORD_OVERLAP_PENALTY = 0.75
MAX_LENGTH_DIFFERENCE = 5
SUGGESTION_MIN_CONFIDENCE = 0.5
SUGGESTION_MIN_LENGTH = 3
MAX_SUGGESTIONS = 20
TIER2_DEFAULT_CONFIDENCE = 0.7
NO_MATCH_REASON = "no existing tag matches"

# canonical tag -> alternative spellings
SYNONYMS: Dict[str, List[str]] = {
    # Hair colors
    "blonde": ["blonde hair", "blond", "blond hair", "golden hair"],
    "brunette": ["brunette hair", "brown hair", "dark hair"],
    "redhead": ["red hair", "ginger", "ginger hair", "auburn"],
    "black hair": ["dark hair", "raven hair"],

    # Body types
    "busty": ["big breasts", "large breasts", "huge breasts", "big boobs", "large boobs"],
    "petite": ["small", "tiny", "slim", "small frame"],
    "curvy": ["thick", "thicc", "voluptuous", "hourglass"],
    "athletic": ["fit", "toned", "muscular", "sporty"],
    "bbw": ["plus size", "chubby", "plump", "heavy"],
    "milf": ["mature", "mom", "mother"],

    # Acts
    "blowjob": ["bj", "oral", "sucking", "fellatio", "giving head"],
    "handjob": ["hj", "hand job", "stroking", "jerking"],
    "anal": ["anal sex", "butt sex", "ass fuck"],
    "doggy": ["doggystyle", "doggy style", "from behind"],
    "cowgirl": ["riding", "on top", "girl on top"],
    "reverse cowgirl": ["reverse riding"],
    "missionary": ["missionary position"],
    "creampie": ["cream pie", "cum inside", "internal cum"],
    "facial": ["cum on face", "face cum"],
    "cumshot": ["cum shot", "money shot"],
    "deepthroat": ["deep throat", "throat fuck"],
    "titfuck": ["tit fuck", "titty fuck", "paizuri", "boobjob"],

    # Settings
    "bedroom": ["bed", "in bed"],
    "bathroom": ["shower", "bath", "tub"],
    "outdoor": ["outside", "outdoors", "public"],
    "office": ["work", "desk"],
    "kitchen": ["counter"],

    # Clothing
    "lingerie": ["underwear", "bra", "panties"],
    "stockings": ["thigh highs", "nylons", "hosiery"],
    "heels": ["high heels", "stilettos"],
    "bikini": ["swimsuit", "bathing suit"],
    "cosplay": ["costume", "roleplay"],

    # Genres
    "pov": ["point of view", "first person"],
    "solo": ["solo female", "solo male", "masturbation"],
    "lesbian": ["girl on girl", "gg", "ff"],
    "threesome": ["3some", "three way", "menage"],
    "gangbang": ["gang bang", "group sex"],
    "interracial": ["ir", "bbc", "interacial"],
    "amateur": ["homemade", "home video"],
    "professional": ["studio", "pro"],

    # Positions
    "69": ["sixty nine", "sixtynine"],
    "standing": ["standing sex", "standing position"],
    "prone": ["prone bone", "face down"],
}


def normalize_label(label: str) -> str:
    """Lowercase, underscores to spaces, strip punctuation, collapse whitespace.

    Letters and digits of any script survive, so non-Latin names keep a key.
    """
    normalized = label.lower().replace("_", " ")
    normalized = re.sub(r"[^\w\s]", "", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def format_tag_name(label: str) -> str:
    """Display form for a suggested tag: lowercase words, single spaces."""
    return " ".join(word.lower() for word in label.replace("_", " ").split())


def build_reverse_synonyms(synonyms: Dict[str, List[str]]) -> Dict[str, str]:
    """Alternative spelling -> canonical name. Later entries overwrite earlier ones."""
    reverse = {}
    for canonical, alternatives in synonyms.items():
        for alternative in alternatives:
            reverse[normalize_label(alternative)] = canonical
    return reverse


REVERSE_SYNONYMS = build_reverse_synonyms(SYNONYMS)


class VocabularyStore(Protocol):
    def all_tags(self) -> List[Tag]: ...

    def find_tag_id(self, name: str) -> Optional[int]: ...

    def insert_tag(self, name: str) -> int: ...


class TagResolver:
    """Resolves proposed labels against a TTL-cached copy of the vocabulary."""

    def __init__(
        self,
        store: VocabularyStore,
        cache_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        performance_monitor: Optional[PerformanceMonitor] = None,
    ):
        self.store = store
        self.cache_ttl = cache_ttl
        self.clock = clock
        self.performance_monitor = performance_monitor
        self.logger = get_logger("tag_resolver")
        self._cache: Dict[str, Tag] = {}
        self._last_refresh: Optional[float] = None

    def refresh_cache(self, force: bool = False) -> None:
        """Reload the vocabulary when the TTL has elapsed or the cache is empty."""
        now = self.clock()
        fresh = self._last_refresh is not None and now - self._last_refresh < self.cache_ttl
        if fresh and self._cache and not force:
            if self.performance_monitor:
                self.performance_monitor.record_cache_hit()
            return

        if self.performance_monitor:
            self.performance_monitor.record_cache_miss()
        try:
            tags = self.store.all_tags()
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Failed to refresh tag cache: {e}")
            return

        cache: Dict[str, Tag] = {}
        for tag in tags:
            key = normalize_label(tag.name)
            if not key:
                # Symbol-only names would match every label by containment
                self.logger.debug(f"Skipping unmatchable tag {tag.name!r} (id {tag.id})")
                continue
            # First entry wins when two names normalize the same way
            cache.setdefault(key, tag)
        self._cache = cache
        self._last_refresh = now
        self.logger.debug(f"Refreshed tag cache: {len(cache)} tags")

    def invalidate(self) -> None:
        self._last_refresh = None

    def match(self, tier1_tags: List[TagScore], tier2_tags: Optional[List[str]] = None) -> Tier3Result:
        """Resolve Tier 1 labels (ranked) then Tier 2 labels against the vocabulary."""
        self.refresh_cache()

        candidates: List[Tuple[str, float]] = [(tag.label, tag.confidence) for tag in tier1_tags]
        candidates.extend((name, TIER2_DEFAULT_CONFIDENCE) for name in tier2_tags or [])

        matched: List[MatchedTag] = []
        suggestions: List[NewTagSuggestion] = []
        seen_ids = set()
        seen_suggestions = set()

        for label, confidence in candidates:
            hit, suggestion = self.find_match(label, confidence)
            if hit is not None:
                if hit.id not in seen_ids:
                    seen_ids.add(hit.id)
                    matched.append(hit)
            elif suggestion is not None and suggestion.name.lower() not in seen_suggestions:
                seen_suggestions.add(suggestion.name.lower())
                suggestions.append(suggestion)

        matched.sort(key=lambda t: t.confidence, reverse=True)
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return Tier3Result(matched_tags=matched, new_tag_suggestions=suggestions[:MAX_SUGGESTIONS])

    def find_match(self, label: str, confidence: float) -> Tuple[Optional[MatchedTag], Optional[NewTagSuggestion]]:
        """Run the cascade for one label against the current cache snapshot."""
        normalized = normalize_label(label)
        if not normalized:
            return None, None

        exact = self._cache.get(normalized)
        if exact:
            return _matched(exact, confidence, MatchType.EXACT), None

        canonical = REVERSE_SYNONYMS.get(normalized)
        if canonical:
            synonym = self._cache.get(normalize_label(canonical))
            if synonym:
                return _matched(synonym, confidence * SYNONYM_PENALTY, MatchType.SYNONYM), None

        # Alternatives shared by several canonicals only keep the last one in
        # the reverse index
        for canonical, alternatives in SYNONYMS.items():
            if any(normalize_label(a) == normalized for a in alternatives):
                synonym = self._cache.get(normalize_label(canonical))
                if synonym:
                    return _matched(synonym, confidence * SYNONYM_PENALTY, MatchType.SYNONYM), None

        partial = self._partial_match(normalized, confidence)
        if partial:
            return partial, None

        if confidence >= SUGGESTION_MIN_CONFIDENCE and len(normalized) >= SUGGESTION_MIN_LENGTH:
            return None, NewTagSuggestion(
                name=format_tag_name(label),
                confidence=confidence,
                reason=NO_MATCH_REASON,
            )
        return None, None

    def _partial_match(self, normalized: str, confidence: float) -> Optional[MatchedTag]:
        words = normalized.split()
        for name, tag in self._cache.items():
            if (name in normalized or normalized in name) and abs(len(name) - len(normalized)) <= MAX_LENGTH_DIFFERENCE:
                return _matched(tag, confidence * CONTAINMENT_PENALTY, MatchType.PARTIAL)

            tag_words = name.split()
            overlap = sum(1 for word in words if word in tag_words)
            if overlap > 0 and overlap >= min(len(words), len(tag_words)):
                return _matched(tag, confidence * WORD_OVERLAP_PENALTY, MatchType.PARTIAL)
        return None

    def create_new_tags(self, suggestions: List[NewTagSuggestion]) -> List[int]:
        """Persist approved suggestions, reusing existing tags case-insensitively."""
        created_ids = []
        for suggestion in suggestions:
            try:
                existing = self.store.find_tag_id(suggestion.name)
                if existing is not None:
                    created_ids.append(existing)
                    continue
                created_ids.append(self.store.insert_tag(suggestion.name))
                if self.performance_monitor:
                    self.performance_monitor.record_tag_created()
                self.logger.info(f"🏷️  Created tag '{suggestion.name}'")
            except IntegrityError:
                # Inserted concurrently under a different case
                existing = self.store.find_tag_id(suggestion.name)
                if existing is not None:
                    created_ids.append(existing)
            except SQLAlchemyError as e:
                self.logger.error(f"❌ Failed to create tag '{suggestion.name}': {e}")

        self.invalidate()
        return created_ids


def _matched(tag: Tag, confidence: float, match_type: MatchType) -> MatchedTag:
    return MatchedTag(id=tag.id, name=tag.name, confidence=confidence, match_type=match_type)
