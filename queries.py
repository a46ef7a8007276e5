"""
Query composition for the restaurant list and the per-restaurant ratings list.

Nothing here touches a store: the functions only describe a query, and the
store (memory or MongoDB) executes the description.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import config
from schemas import (
    DEFAULT_DIRECTIONS,
    FIELD_CATEGORY,
    FIELD_CITY,
    FIELD_PRICE,
    FIELD_TIMESTAMP,
    RESTAURANTS,
    SORT_FIELDS,
    Filters,
    SortDirection,
    SortField,
    ratings_path,
)

DEFAULT_LIMIT = config.QUERY_LIMIT


@dataclass(frozen=True)
class Equality:
    field: str
    value: Any


@dataclass(frozen=True)
class OrderBy:
    field: str
    direction: SortDirection = SortDirection.asc

    @property
    def descending(self) -> bool:
        return self.direction == SortDirection.desc


@dataclass(frozen=True)
class QueryDescription:
    collection: str
    predicates: Tuple[Equality, ...]
    order_by: OrderBy
    limit: int

    def to_mongo(self) -> Tuple[Dict[str, Any], List[Tuple[str, int]], int]:
        """Render as (filter, sort, limit) arguments for pymongo's find()."""
        filt = {p.field: p.value for p in self.predicates}
        sort = [(self.order_by.field, -1 if self.order_by.descending else 1)]
        return filt, sort, self.limit

    def matches(self, doc: Dict[str, Any]) -> bool:
        if self.order_by.field not in doc:
            # documents without the ordering field never appear in ordered results
            return False
        return all(doc.get(p.field) == p.value for p in self.predicates)

    def apply(self, docs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Filter, order and bound an in-memory collection."""
        hits = [d for d in docs if self.matches(d)]
        hits.sort(key=lambda d: d[self.order_by.field], reverse=self.order_by.descending)
        return hits[:self.limit]


def compose_restaurant_query(filters: Optional[Filters] = None,
                             limit: int = DEFAULT_LIMIT) -> QueryDescription:
    filters = filters or Filters()

    predicates = []
    if filters.category is not None:
        predicates.append(Equality(FIELD_CATEGORY, filters.category))
    if filters.city is not None:
        predicates.append(Equality(FIELD_CITY, filters.city))
    if filters.price is not None:
        predicates.append(Equality(FIELD_PRICE, filters.price))

    sort_by = filters.sort_by or SortField.rating
    direction = filters.sort_direction or DEFAULT_DIRECTIONS[sort_by]

    return QueryDescription(
        collection=RESTAURANTS,
        predicates=tuple(predicates),
        order_by=OrderBy(SORT_FIELDS[sort_by], direction),
        limit=limit,
    )


def compose_rating_query(restaurant_id: str, limit: int = DEFAULT_LIMIT) -> QueryDescription:
    """Newest ratings first for the restaurant detail view."""
    return QueryDescription(
        collection=ratings_path(restaurant_id),
        predicates=(),
        order_by=OrderBy(FIELD_TIMESTAMP, SortDirection.desc),
        limit=limit,
    )
