# dashcore/services/query_planner.py
"""
Turns a declarative query into one native scan plus client-side work.

The store evaluates at most one equality filter and only scans in
ascending key order. Everything else happens here, always in the order
filter -> sort -> truncate, so a limit never hides a valid match.
"""
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from dashcore.errors import ValidationError
from dashcore.infra.store import ASC, DESC, Filters, StoreAdapter, normalize_filters, validate_field
from dashcore.models.record import KEY_FIELD, Record, matches, sort_records


@dataclass(frozen=True)
class Query:
    filters: Tuple[Tuple[str, Any], ...] = ()
    order_field: str = "createdAt"
    order_direction: str = DESC
    limit: Optional[int] = None

    @classmethod
    def build(
        cls,
        filters: Filters = None,
        order_by: str = "createdAt",
        direction: str = DESC,
        limit: Optional[int] = None,
    ) -> "Query":
        query = cls(
            filters=normalize_filters(filters),
            order_field=order_by,
            order_direction=direction,
            limit=limit,
        )
        query.validate()
        return query

    def validate(self):
        validate_field(self.order_field)
        if self.order_direction not in (ASC, DESC):
            raise ValidationError(f"Invalid order direction: {self.order_direction!r}")
        if self.limit is not None and (
            isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0
        ):
            raise ValidationError(f"Invalid limit: {self.limit!r}")


@dataclass(frozen=True)
class QueryPlan:
    native_filter: Optional[Tuple[str, Any]]
    residual_filters: Tuple[Tuple[str, Any], ...]
    client_sort: bool
    native_limit: Optional[int]
    limit: Optional[int]


def plan(query: Query) -> QueryPlan:
    native_order = query.order_field == KEY_FIELD and query.order_direction == ASC
    residual = query.filters[1:]
    return QueryPlan(
        native_filter=query.filters[0] if query.filters else None,
        residual_filters=residual,
        client_sort=not native_order,
        # pushing the limit down is only safe when nothing is filtered or reordered after the scan
        native_limit=query.limit if native_order and not residual else None,
        limit=query.limit,
    )


def finish(
    records: Iterable[Record],
    filters: Tuple[Tuple[str, Any], ...],
    query: Query,
    sort: bool = True,
) -> List[Record]:
    """Client-side pipeline: filter, then sort, then truncate."""
    rows = [record for record in records if matches(record, filters)]
    if sort:
        rows = sort_records(rows, query.order_field, query.order_direction)
    if query.limit is not None:
        rows = rows[: query.limit]
    return rows


def apply(query: Query, records: Iterable[Record]) -> List[Record]:
    """Evaluate a whole query against an unfiltered snapshot."""
    return finish(records, query.filters, query)


async def execute(store: StoreAdapter, path: str, query: Query) -> List[Record]:
    query_plan = plan(query)
    rows = await store.scan(
        path,
        equality_filter=query_plan.native_filter,
        order_field=KEY_FIELD,
        order_direction=ASC,
        limit=query_plan.native_limit,
    )
    return finish(rows, query_plan.residual_filters, query, sort=query_plan.client_sort)
