"""
Item category catalog.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Category:
    """Browsable item category."""

    slug: str
    name: str
    description: str


CATEGORIES: tuple[Category, ...] = (
    Category(
        "vintage-watches",
        "Vintage Watches",
        "Luxury timepieces and vintage watches from renowned brands",
    ),
    Category("fine-art", "Fine Art", "Paintings, sculptures, and contemporary art pieces"),
    Category(
        "antique-furniture",
        "Antique Furniture",
        "Period furniture and decorative arts from various eras",
    ),
    Category(
        "jewelry-gems",
        "Jewelry & Gems",
        "Fine jewelry, precious stones, and vintage accessories",
    ),
    Category(
        "collectible-coins",
        "Collectible Coins",
        "Rare coins, currency, and numismatic collectibles",
    ),
    Category(
        "sports-memorabilia",
        "Sports Memorabilia",
        "Autographed items, trading cards, and sports collectibles",
    ),
    Category(
        "vintage-instruments",
        "Vintage Instruments",
        "Musical instruments from guitars to pianos and beyond",
    ),
    Category("classic-cars", "Classic Cars", "Vintage automobiles and automotive collectibles"),
)

_BY_SLUG = {category.slug: category for category in CATEGORIES}


def get_category(slug: str) -> Category | None:
    return _BY_SLUG.get(slug)


def category_display_name(slug: str) -> str:
    """Display name for a known slug, otherwise the tag as given."""
    category = _BY_SLUG.get(slug)
    return category.name if category else slug
