"""
Store key and catalog id handling for kit-enricher.

Store keys look like "M12345" or "N678": a one-letter series prefix followed
by the official LEGO set number written backwards. Catalog ids are the
official set numbers ("54321"), i.e. the part of a Rebrickable set number
("54321-1") before the first separator.

Pure Python implementation - no external dependencies.
"""

import re

# =============================================================================
# Normalization
# =============================================================================

KEY_IN_TEXT_PATTERN = re.compile(r"\b([MN]\d+)\b", re.IGNORECASE)
KEY_IN_PRODUCT_PATH_PATTERN = re.compile(r"/products/.*?([mn]\d+)", re.IGNORECASE)
KEY_ANYWHERE_PATTERN = re.compile(r"([mn]\d+)", re.IGNORECASE)
LEGACY_NUMERIC_PRODUCT_PATTERN = re.compile(r"/products/(\d+)", re.IGNORECASE)


def normalize_key(key: str | None) -> str:
    """Canonical form of a store key: trimmed and uppercased."""
    return (key or "").strip().upper()


def to_catalog_id(key: str | None) -> str:
    """
    Derive the catalog id from a store key.

    Drops the one-letter prefix and reverses the rest:
    "M12345" -> "54321", "N1" -> "1". The prefix is lost, so there is no
    inverse.
    """
    normalized = normalize_key(key)
    if not normalized:
        return ""
    return normalized[1:][::-1]


def catalog_id_from_set_num(set_num: str | None) -> str:
    """Catalog id from a composite set number ("75192-1" -> "75192")."""
    if not set_num:
        return ""
    return set_num.split("-", 1)[0].strip()


# =============================================================================
# Extraction from page content
# =============================================================================


def extract_key_from_text(text: str | None) -> str | None:
    """Find the first standalone store key in free text."""
    match = KEY_IN_TEXT_PATTERN.search(text or "")
    return match.group(1).upper() if match else None


def extract_key_from_href(href: str | None) -> str | None:
    """
    Find a store key in a product link.

    Tries, in order:
    1. A key inside the product slug ("/products/m12345-some-title")
    2. A key anywhere in the link
    3. A bare numeric product path ("/products/12345"), read as "M12345"
    """
    href = href or ""

    match = KEY_IN_PRODUCT_PATH_PATTERN.search(href)
    if match:
        return match.group(1).upper()

    match = KEY_ANYWHERE_PATTERN.search(href)
    if match:
        return match.group(1).upper()

    match = LEGACY_NUMERIC_PRODUCT_PATTERN.search(href)
    if match:
        return f"M{match.group(1)}"

    return None


# =============================================================================
# Presentation helpers
# =============================================================================


def format_display_title(
    catalog_id: str | None,
    name: str | None,
    year: str | int | None,
    key: str | None = None,
) -> str:
    """
    Build the display title for an enriched product.

    "75192 - Millennium Falcon (2017) - M29157"; missing parts are dropped.
    """
    catalog_id = (catalog_id or "").strip()
    name = (name or "").strip()
    raw_key = normalize_key(key)

    if catalog_id and name:
        left = f"{catalog_id} - {name}"
    else:
        left = catalog_id or name

    year_part = f" ({year})" if year else ""
    key_part = f" - {raw_key}" if raw_key else ""
    return f"{left}{year_part}{key_part}".strip()


def is_excluded_name(name: str | None, keywords: list[str]) -> bool:
    """True if a registry name marks a generic parts bundle rather than a set."""
    if not name:
        return False
    return any(keyword in name for keyword in keywords)
