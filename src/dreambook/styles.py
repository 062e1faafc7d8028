"""Style resolution: mapping a user-chosen style key to a StyleRecord."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List

from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from dreambook.db_models import STYLES_COLLECTION, style_from_document
from dreambook.models import StyleRecord


logger = logging.getLogger(__name__)


DEFAULT_STYLES: List[StyleRecord] = [
    StyleRecord(
        key="ghibli",
        display_name="Ghibli",
        description="Hand-drawn Japanese animation look",
        base_instructions=(
            "Create the image in a style close to Studio Ghibli animation. Show exactly one scene per image. "
            "Use delicate hand-drawn lines, lush painted backgrounds and warm natural light."
        ),
        character_instructions="Keep the character's proportions soft and rounded with expressive eyes.",
        order=1,
    ),
    StyleRecord(
        key="disney",
        display_name="Disney",
        description="Classic feature animation",
        base_instructions=(
            "Create the image in a Disney feature animation style with soft colours "
            "and lively, expressive characters."
        ),
        character_instructions="Give the character an appealing, friendly animated design.",
        order=2,
    ),
    StyleRecord(
        key="watercolor",
        display_name="Watercolor",
        description="Soft watercolour painting",
        base_instructions=(
            "Paint the image as a soft watercolour illustration with gentle washes, "
            "visible paper texture and light, airy colours."
        ),
        order=3,
    ),
    StyleRecord(
        key="realistic",
        display_name="Realistic",
        description="Photographic realism",
        base_instructions=(
            "Create a realistic image with fine detail and lifelike textures and lighting."
        ),
        character_instructions="Preserve the person's real facial features and skin tone faithfully.",
        order=4,
    ),
    StyleRecord(
        key="korean",
        display_name="Korean webtoon",
        description="Clean Korean webtoon illustration",
        base_instructions=(
            "Create the image in a Korean webtoon style with clean line work and clear, vivid colours."
        ),
        order=5,
    ),
    StyleRecord(
        key="storybook",
        display_name="Storybook",
        description="Fairy tale picture book illustration",
        base_instructions=(
            "Create the image as a fairy tale picture book illustration with a magical, "
            "beautiful atmosphere and gentle storybook colours."
        ),
        character_instructions="Draw the character as the friendly hero of a children's picture book.",
        order=6,
    ),
]


def normalise_style_key(style_key: str | None) -> str:
    """Style keys compare case-insensitively after trimming."""
    return (style_key or "").strip().lower()


class StyleResolver(ABC):
    """Maps a style key to a StyleRecord; an unknown key resolves to None."""

    @abstractmethod
    def resolve(self, style_key: str) -> StyleRecord | None:
        """Return the active style for ``style_key`` or None if there is none."""

    @abstractmethod
    def list_styles(self) -> List[StyleRecord]:
        """Return active styles in display order."""


class InMemoryStyleResolver(StyleResolver):
    """Style resolver over a fixed catalogue."""

    def __init__(self, styles: Iterable[StyleRecord] | None = None):
        catalogue = DEFAULT_STYLES if styles is None else styles
        self._styles: Dict[str, StyleRecord] = {
            normalise_style_key(style.key): style for style in catalogue
        }

    def resolve(self, style_key: str) -> StyleRecord | None:
        style = self._styles.get(normalise_style_key(style_key))
        if style is None or not style.is_active:
            return None
        return style

    def list_styles(self) -> List[StyleRecord]:
        active = [style for style in self._styles.values() if style.is_active]
        return sorted(active, key=lambda style: (style.order, style.key))


class MongoStyleResolver(StyleResolver):
    """Style resolver backed by the admin-maintained styles collection.

    When the collection is unreachable or empty, ``fallback`` answers instead.
    """

    def __init__(self, collection: Collection | None = None, fallback: StyleResolver | None = None):
        if collection is None:
            from dreambook.db_config import get_mongo_collection

            collection = get_mongo_collection(STYLES_COLLECTION)
        self.collection = collection
        self.fallback = fallback if fallback is not None else InMemoryStyleResolver()

    def resolve(self, style_key: str) -> StyleRecord | None:
        key = normalise_style_key(style_key)
        if not key:
            return None
        try:
            document = self.collection.find_one({"key": key, "is_active": {"$ne": False}})
        except PyMongoError as e:
            logger.warning("Style lookup failed for %s, using built-in catalogue: %s", key, e)
            return self.fallback.resolve(key)
        if document is None:
            return self.fallback.resolve(key)
        return style_from_document(document)

    def list_styles(self) -> List[StyleRecord]:
        try:
            documents = list(self.collection.find({"is_active": {"$ne": False}}))
        except PyMongoError as e:
            logger.warning("Style listing failed, using built-in catalogue: %s", e)
            return self.fallback.list_styles()
        if not documents:
            return self.fallback.list_styles()
        styles = [style_from_document(document) for document in documents]
        return sorted(styles, key=lambda style: (style.order, style.key))

    def seed_defaults(self, styles: Iterable[StyleRecord] = DEFAULT_STYLES) -> int:
        """Insert the built-in styles that are missing from the collection."""
        inserted = 0
        for style in styles:
            result = self.collection.update_one(
                {"key": style.key},
                {"$setOnInsert": style.model_dump()},
                upsert=True,
            )
            if result.upserted_id is not None:
                inserted += 1
        return inserted
