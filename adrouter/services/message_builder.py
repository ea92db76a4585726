"""Message builder - renders listing and digest payloads for manual sending.

Everything here is pure: no database, no clock. The distribution service
renders once at creation time and stores the result as a snapshot.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

# Destination messaging apps cap a single message around this size.
MAX_TEXT_LENGTH = 4000
ELLIPSIS = "..."
SLUG_MAX_LENGTH = 50

DEFAULT_ICON = "🏠"
CATEGORY_ICONS = (
    ("sale", "🏘️"),
    ("rent", "🔑"),
    ("commercial", "🏢"),
    ("shabbat", "🕯️"),
    ("shared", "🤝"),
    ("wanted", "🔍"),
)

FEATURE_LABELS = (
    ("storage", "📦", "מחסן"),
    ("balcony", "🏡", "מרפסת"),
    ("safeRoom", "🛡️", 'ממ"ד'),
    ("parking", "🅿️", "חניה"),
    ("elevator", "🛗", "מעלית"),
    ("airConditioning", "❄️", "מיזוג אוויר"),
    ("sukkaBalcony", "🌿", "מרפסת סוכה"),
    ("view", "🌄", "נוף"),
    ("yard", "🌳", "חצר"),
    ("accessibleForDisabled", "♿", "נגישה לנכים"),
    ("housingUnit", "🏘️", "יחידת דיור"),
    ("upgraded", "✨", "משופץ"),
)

_CONTROL_CHARS = re.compile(r"[\u0000-\u001F\u007F-\u009F]")
_CONTROL_CHARS_KEEP_NEWLINE = re.compile(r"[\u0000-\u0009\u000B-\u001F\u007F-\u009F]")
_STYLE_CHARS = re.compile(r"[*_~`]")
_SLUG_DISALLOWED = re.compile(r"[^\u0590-\u05FFa-z0-9\s-]")


@dataclass(frozen=True)
class ListingSnapshot:
    """The listing fields routing and rendering need, detached from the ORM."""

    id: str
    display_number: int
    title: str
    description: Optional[str] = None
    price: Optional[int] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    category_slug: Optional[str] = None
    city_id: Optional[str] = None
    city_name: Optional[str] = None
    region: Optional[str] = None
    street: Optional[str] = None
    neighborhood: Optional[str] = None
    status: str = "PENDING"
    attributes: Dict[str, Any] = field(default_factory=dict)
    images: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_row(cls, listing) -> "ListingSnapshot":
        return cls(
            id=str(listing.id),
            display_number=int(listing.display_number or 0),
            title=listing.title or "",
            description=listing.description,
            price=listing.price,
            category_id=listing.category_id,
            category_name=listing.category_name,
            category_slug=listing.category_slug,
            city_id=listing.city_id,
            city_name=listing.city_name,
            region=listing.region,
            street=listing.street,
            neighborhood=listing.neighborhood,
            status=listing.status or "PENDING",
            attributes=_load_json(listing.attributes, dict),
            images=_load_json(listing.images, list),
        )

    @property
    def rooms(self):
        return self.attributes.get("rooms")


def _load_json(raw, expected_type):
    if not raw:
        return expected_type()
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return expected_type()
    return value if isinstance(value, expected_type) else expected_type()


@dataclass(frozen=True)
class MessagePayload:
    text: str
    canonical_url: str
    image_url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "canonical_url": self.canonical_url,
            "image_url": self.image_url,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MessagePayload":
        return cls(
            text=data.get("text", ""),
            canonical_url=data.get("canonical_url", ""),
            image_url=data.get("image_url"),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["MessagePayload"]:
        if not raw:
            return None
        return cls.from_dict(json.loads(raw))


def sanitize_text(text: Optional[str]) -> str:
    """Strip control characters and the destination's styling markers."""
    if not text:
        return ""
    text = _CONTROL_CHARS.sub("", text.strip())
    return _STYLE_CHARS.sub("", text).strip()


def sanitize_multiline(text: Optional[str]) -> str:
    if not text:
        return ""
    lines = [_STYLE_CHARS.sub("", _CONTROL_CHARS.sub("", line)).strip() for line in text.strip().split("\n")]
    return "\n".join(line for line in lines if line)


def truncate_text(text: str, limit: int) -> str:
    """
    Cut `text` to at most `limit` characters plus an ellipsis.

    Prefers the last whitespace inside the limit when it falls past 80% of
    the limit; otherwise hard-cuts.
    """
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    cut = text[:limit]
    last_space = max(cut.rfind(" "), cut.rfind("\n"))
    if last_space > limit * 0.8:
        return cut[:last_space].rstrip() + ELLIPSIS
    return cut + ELLIPSIS


def cap_length(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(ELLIPSIS)] + ELLIPSIS


def slugify(text: Optional[str]) -> str:
    slug = _SLUG_DISALLOWED.sub("", (text or "").lower().strip())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug[:SLUG_MAX_LENGTH].strip("-")


def format_price(price) -> str:
    return f"₪{int(price):,}"


def category_icon(category_slug: Optional[str]) -> str:
    if not category_slug:
        return DEFAULT_ICON
    slug = category_slug.lower()
    for key, icon in CATEGORY_ICONS:
        if key in slug:
            return icon
    return DEFAULT_ICON


class MessageBuilder:
    """Render listing messages, digests and operator deep links."""

    def __init__(self, base_url: str, description_limit: int = 200):
        self.base_url = base_url.rstrip("/")
        self.description_limit = description_limit

    def listing_url(self, listing: ListingSnapshot) -> str:
        slug = slugify(listing.title)
        if slug:
            return f"{self.base_url}/ads/{listing.id}/{slug}"
        return f"{self.base_url}/ads/{listing.id}"

    def build_listing_message(self, listing: ListingSnapshot) -> MessagePayload:
        url = self.listing_url(listing)
        sections = [f"{category_icon(listing.category_slug)} {sanitize_text(listing.title)}".rstrip()]

        details = self._detail_parts(listing)
        if details:
            sections.append(" | ".join(details))

        features = self._feature_lines(listing)
        if features:
            sections.append("\n".join(features))

        description = sanitize_multiline(listing.description)
        if description:
            sections.append(truncate_text(description, self.description_limit))

        sections.append(f"🔗 לפרטים ותמונות: {url}")
        sections.append(f"מודעה מס' {listing.display_number}")

        text = _CONTROL_CHARS_KEEP_NEWLINE.sub("", "\n\n".join(sections))
        return MessagePayload(
            text=cap_length(text),
            canonical_url=url,
            image_url=self._main_image(listing),
            metadata={
                "listing_id": listing.id,
                "display_number": listing.display_number,
                "title": listing.title,
                "city": listing.city_name,
                "category": listing.category_name,
            },
        )

    def build_digest_message(self, listings: Sequence[ListingSnapshot], target_name: str) -> MessagePayload:
        lines = [
            f"📢 עדכון נכסים חדשים - {sanitize_text(target_name)}",
            f"נוספו {len(listings)} נכסים חדשים:",
            "",
        ]
        for index, listing in enumerate(listings, start=1):
            lines.append(f"{index}. {self._short_entry(listing)}")
            lines.append(f"   🔗 {self.listing_url(listing)}")
            lines.append("")
        lines.append(f"💡 לצפייה בכל הנכסים: {self.base_url}")

        text = _CONTROL_CHARS_KEEP_NEWLINE.sub("", "\n".join(lines))
        return MessagePayload(
            text=cap_length(text),
            canonical_url=self.base_url,
            metadata={
                "digest": True,
                "target_name": target_name,
                "listing_ids": [listing.id for listing in listings],
                "count": len(listings),
            },
        )

    @staticmethod
    def build_web_link(text: str, phone_number: Optional[str] = None) -> str:
        encoded = _encode(text)
        phone = _digits(phone_number)
        if phone:
            return f"https://wa.me/{phone}?text={encoded}"
        return f"https://web.whatsapp.com/send?text={encoded}"

    @staticmethod
    def build_app_link(text: str, phone_number: Optional[str] = None) -> str:
        encoded = _encode(text)
        phone = _digits(phone_number)
        if phone:
            return f"whatsapp://send?phone={phone}&text={encoded}"
        return f"whatsapp://send?text={encoded}"

    def _detail_parts(self, listing: ListingSnapshot) -> List[str]:
        parts = []
        if listing.category_name:
            parts.append(sanitize_text(listing.category_name))

        city = sanitize_text(listing.city_name)
        place = sanitize_text(listing.street) or sanitize_text(listing.neighborhood)
        location = ", ".join(p for p in (city, place) if p)
        if location:
            parts.append(location)

        if listing.price and listing.price > 0:
            parts.append(format_price(listing.price))

        attrs = listing.attributes
        if attrs.get("rooms"):
            parts.append(f"{attrs['rooms']} חדרים")
        if attrs.get("area"):
            parts.append(f'{attrs["area"]} מ"ר')
        if attrs.get("floor") not in (None, ""):
            parts.append(f"קומה {attrs['floor']}")
        return parts

    @staticmethod
    def _feature_lines(listing: ListingSnapshot) -> List[str]:
        features = listing.attributes.get("features")
        if not isinstance(features, dict):
            return []
        return [f"{icon} {label}" for key, icon, label in FEATURE_LABELS if features.get(key)]

    @staticmethod
    def _short_entry(listing: ListingSnapshot) -> str:
        parts = [sanitize_text(listing.title)]
        if listing.city_name:
            parts.append(sanitize_text(listing.city_name))
        if listing.price and listing.price > 0:
            parts.append(format_price(listing.price))
        if listing.rooms:
            parts.append(f"{listing.rooms} חד'")
        return " · ".join(p for p in parts if p)

    @staticmethod
    def _main_image(listing: ListingSnapshot) -> Optional[str]:
        images = [img for img in listing.images if isinstance(img, dict) and (img.get("branded_url") or img.get("url"))]
        if not images:
            return None
        first = min(images, key=lambda img: img.get("order", 0) or 0)
        return first.get("branded_url") or first.get("url")


def _encode(text: str) -> str:
    return quote(text or "", safe="-_.!~*'()")


def _digits(phone_number: Optional[str]) -> str:
    return re.sub(r"\D", "", phone_number or "")
