"""Read-only content catalog interface and the bundled JSON catalog."""
import json
from pathlib import Path
from typing import Iterable, Optional, Protocol

from med_tutor.errors import NotFoundError, ValidationError
from med_tutor.models import Band, ContentItem, ContentType, Flashcard, MicroCase, Quiz

CONTENT_DIR = Path(__file__).parent / "content"

ITEM_CLASSES = {
    ContentType.QUIZ: Quiz,
    ContentType.MICRO_CASE: MicroCase,
    ContentType.FLASHCARD: Flashcard,
}


class ContentCatalog(Protocol):
    def get_items_by_domain_and_band(self, domain: str, band: Band) -> list[ContentItem]:
        ...

    def get_item_by_id(self, content_id: str) -> Optional[ContentItem]:
        ...

    def domains(self) -> list[str]:
        ...

    def neighbors(self, domain: str) -> list[str]:
        ...


class InMemoryCatalog:
    """Catalog held in memory, in insertion order.

    Asking for items of a domain the catalog has never heard of raises
    NotFoundError; a known domain with nothing at the band returns [].
    """

    def __init__(
        self,
        items: Iterable[ContentItem] = (),
        neighbors: Optional[dict[str, list[str]]] = None,
        domains: Optional[Iterable[str]] = None,
    ):
        self._items: dict[str, ContentItem] = {}
        self._domains: list[str] = list(domains or [])
        self._neighbors = dict(neighbors or {})
        for item in items:
            if item.content_id in self._items:
                raise ValidationError(f"Duplicate content id: {item.content_id}")
            self._items[item.content_id] = item
            if item.domain not in self._domains:
                self._domains.append(item.domain)

    def __len__(self) -> int:
        return len(self._items)

    def get_items_by_domain_and_band(self, domain: str, band: Band) -> list[ContentItem]:
        if domain not in self._domains:
            raise NotFoundError(f"Unknown domain: {domain}")
        return [i for i in self._items.values() if i.domain == domain and i.band == band]

    def get_item_by_id(self, content_id: str) -> Optional[ContentItem]:
        return self._items.get(content_id)

    def domains(self) -> list[str]:
        return list(self._domains)

    def neighbors(self, domain: str) -> list[str]:
        return list(self._neighbors.get(domain, []))


def item_from_dict(data: dict) -> ContentItem:
    """Build the right ContentItem subclass from a catalog record."""
    try:
        content_type = ContentType(data["type"])
        band = Band(data["band"])
    except KeyError as e:
        raise ValidationError(f"Catalog item missing field {e}: {data!r}") from None
    except ValueError as e:
        raise ValidationError(f"Catalog item {data.get('id')!r}: {e}") from None
    fields = {
        k: v for k, v in data.items() if k not in ("id", "type", "band")
    }
    try:
        return ITEM_CLASSES[content_type](content_id=data["id"], band=band, **fields)
    except (KeyError, TypeError) as e:
        raise ValidationError(f"Catalog item {data.get('id')!r} is malformed: {e}") from None


def load_catalog(path: Optional[str] = None) -> InMemoryCatalog:
    """Load a catalog JSON file; defaults to the bundled content/catalog.json."""
    source = Path(path) if path else CONTENT_DIR / "catalog.json"
    data = json.loads(source.read_text(encoding="utf-8"))
    domains = [d["id"] for d in data.get("domains", [])]
    neighbors = {d["id"]: d.get("neighbors", []) for d in data.get("domains", [])}
    items = [item_from_dict(record) for record in data.get("items", [])]
    return InMemoryCatalog(items, neighbors=neighbors, domains=domains)
