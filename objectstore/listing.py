"""Prefix/delimiter/marker pagination shared by the store and the catalog listings."""

from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, List, Optional, TypeVar

T = TypeVar("T")

MAX_KEYS_LIMIT = 1000


@dataclass
class ListPage(Generic[T]):
    entries: List[T] = field(default_factory=list)
    common_prefixes: List[str] = field(default_factory=list)
    is_truncated: bool = False
    next_marker: Optional[str] = None


def common_prefix_of(key: str, prefix: str, delimiter: str) -> Optional[str]:
    """The common prefix a key folds into, or None when it is listed on its own."""
    if not delimiter:
        return None
    cut = key.find(delimiter, len(prefix))
    return key[: cut + len(delimiter)] if cut != -1 else None


def paginate(
    items: Iterable[T],
    key_of: Callable[[T], str],
    prefix: str = "",
    delimiter: str = "",
    marker: str = "",
    max_keys: int = MAX_KEYS_LIMIT,
) -> ListPage[T]:
    """
    Walk items in key order and build one page.

    Keys that contain the delimiter after the prefix fold into a common prefix.
    Entries and common prefixes both count towards max_keys; when the page is
    cut short, next_marker is the last key (or prefix) returned.
    """
    page: ListPage[T] = ListPage()
    returned = 0
    last: Optional[str] = None

    for item in sorted(items, key=key_of):
        key = key_of(item)
        if prefix and not key.startswith(prefix):
            continue
        if marker and key <= marker:
            continue

        common = common_prefix_of(key, prefix, delimiter)
        if common is not None:
            if marker and common <= marker:
                continue
            if page.common_prefixes and page.common_prefixes[-1] == common:
                continue
            if returned >= max_keys:
                page.is_truncated = True
                break
            page.common_prefixes.append(common)
            returned += 1
            last = common
            continue

        if returned >= max_keys:
            page.is_truncated = True
            break
        page.entries.append(item)
        returned += 1
        last = key

    if page.is_truncated:
        page.next_marker = last
    return page
