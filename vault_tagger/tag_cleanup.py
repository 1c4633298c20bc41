"""
Removal of nonsensical vocabulary tags left behind by automatic tagging.
"""

import re
from typing import Iterable, List

from sqlalchemy.exc import SQLAlchemyError

from .library import LibraryStore
from .logging import get_logger
from .models import Tag
from .tag_resolver import TagResolver

INVALID_TAG_PATTERNS = [re.compile(pattern, re.IGNORECASE) for pattern in (
    r"^[a-z]{1,2}$",
    r"^[0-9]+$",
    r"^[^a-z0-9]+$",
    r"monochrome",
    r"grayscale",
    r"non.?human",
    r"^simple.?background$",
    r"^white.?background$",
    r"^looking.?at.?viewer$",
    r"^1girl$",
    r"^1boy$",
    r"^solo$",
    r"fart",
    r"hairy.?toe",
    # Tagger metadata categories
    r"^rating.?",
    r"^score.?",
    r"^artist.?",
    r"^copyright.?",
    r"^character.?",
    r"^general$",
    r"^sensitive$",
    r"^questionable$",
    r"^explicit$",
)]


def is_invalid_tag(name: str) -> bool:
    return any(pattern.search(name) for pattern in INVALID_TAG_PATTERNS)


def find_invalid_tags(tags: Iterable[Tag], protected: Iterable[str] = ()) -> List[Tag]:
    """Tags matching an artifact pattern, minus the protected names."""
    protected_names = {name.lower() for name in protected}
    return [tag for tag in tags if tag.name.lower() not in protected_names and is_invalid_tag(tag.name)]


class TagCleaner:
    def __init__(self, library: LibraryStore, resolver: TagResolver, protected_tags: Iterable[str] = ()):
        self.library = library
        self.resolver = resolver
        self.protected_tags = list(protected_tags)
        self.logger = get_logger("tag_cleanup")

    def cleanup(self) -> int:
        """Delete invalid tags and their media links. Returns the number removed."""
        try:
            invalid = find_invalid_tags(self.library.all_tags(), self.protected_tags)
            if not invalid:
                self.logger.info("✅ No invalid tags found")
                return 0
            removed = self.library.delete_tags(tag.id for tag in invalid)
        except SQLAlchemyError as e:
            self.logger.error(f"❌ Tag cleanup failed: {e}")
            return 0

        self.resolver.invalidate()
        self.logger.info(f"🧹 Cleaned up {removed} invalid tags")
        return removed
