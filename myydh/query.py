"""
Dialect-aware SQL construction for paginated, date-filtered reads.

Every user-supplied value is returned as a bound parameter. The only text
interpolated into SQL is table and column identifiers, which come from
validated settings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

DATE_OPERATORS: Dict[str, str] = {
    "eq": "=",
    "gt": ">",
    "lt": "<",
    "ge": ">=",
    "le": "<=",
}


@dataclass(frozen=True)
class DateFilter:
    operator: str
    value: str


@dataclass
class Statement:
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PagedQuery:
    count: Statement
    page: Statement

    @property
    def statements(self) -> List[Statement]:
        return [self.count, self.page]


def convert_date_param_operator(prefix: str) -> str:
    """Map a two character prefix (``eq``, ``gt``...) to a SQL operator.

    Unrecognised prefixes map to equality.
    """
    return DATE_OPERATORS.get(prefix.lower(), "=")


def parse_date_filter(raw: str) -> DateFilter:
    """Split an incoming date filter such as ``ge2023-01-01`` into parts.

    When the first two characters are not an operator token the whole
    string is the value and the operator is equality.
    """
    prefix = raw[:2].lower()
    if prefix in DATE_OPERATORS:
        return DateFilter(operator=DATE_OPERATORS[prefix], value=raw[2:])
    return DateFilter(operator="=", value=raw)


def parse_timestamp(value: str) -> datetime:
    # Raises ValueError for anything that is not an ISO 8601 date/date-time
    return datetime.fromisoformat(value)


def build_where_clause(
    filters: Iterable[DateFilter], column: str = "Modified"
) -> Tuple[str, Dict[str, Any]]:
    """AND together one predicate per filter, binding each value."""
    predicates: List[str] = []
    params: Dict[str, Any] = {}
    for i, f in enumerate(filters):
        if f.operator not in DATE_OPERATORS.values():
            raise ValueError(f"unsupported operator: {f.operator!r}")
        name = f"modified_{i}"
        predicates.append(f"({column} {f.operator} :{name})")
        params[name] = parse_timestamp(f.value)
    if not predicates:
        return "1 = 1", params
    return " AND ".join(predicates), params


def paginate_clause(dialect: str) -> str:
    if dialect == "mssql":
        return "OFFSET :offset ROWS FETCH NEXT :limit ROWS ONLY"
    if dialect == "postgresql":
        return "LIMIT :limit OFFSET :offset"
    raise ValueError(f"unsupported dialect: {dialect!r}")


def build_page_query(
    table: str,
    where: str,
    params: Optional[Dict[str, Any]],
    page: int,
    per_page: int,
    dialect: str,
    order_by: str = "Modified DESC",
    columns: str = "*",
) -> PagedQuery:
    """Build the count and page statements for a paginated read.

    ``page`` is 0-based.
    """
    if page < 0:
        raise ValueError("page must be >= 0")
    if per_page < 1:
        raise ValueError("per_page must be >= 1")

    params = dict(params or {})
    count = Statement(
        sql=f"SELECT COUNT(*) AS total FROM {table} WHERE {where}",
        params=dict(params),
    )
    page_params = dict(params)
    page_params.update({"offset": page * per_page, "limit": per_page})
    rows = Statement(
        sql=(
            f"SELECT {columns} FROM {table} WHERE {where} "
            f"ORDER BY {order_by} {paginate_clause(dialect)}"
        ),
        params=page_params,
    )
    return PagedQuery(count=count, page=rows)


def register_select(
    table: str,
    filters: Iterable[DateFilter],
    page: int,
    per_page: int,
    dialect: str,
) -> PagedQuery:
    """Document register read ordered by modification time, newest first."""
    where, params = build_where_clause(filters)
    return build_page_query(table, where, params, page, per_page, dialect)


def pagination_meta(total: int, page: int, per_page: int) -> Dict[str, int]:
    """Pagination block for a 1-based ``page``."""
    return {
        "total": total,
        "per_page": per_page,
        "current_page": page,
        "total_pages": -(-total // per_page),
    }


def advisory_lock(dialect: str, resource: str) -> Statement:
    """Exclusive lock on ``resource`` held until the transaction ends.

    Serializes writers that must read before they write, including when
    the rows they would lock do not exist yet.
    """
    if dialect == "mssql":
        return Statement(
            sql=(
                "EXEC sp_getapplock @Resource = :resource, "
                "@LockMode = 'Exclusive', @LockOwner = 'Transaction'"
            ),
            params={"resource": resource},
        )
    if dialect == "postgresql":
        return Statement(
            sql="SELECT pg_advisory_xact_lock(hashtext(:resource))",
            params={"resource": resource},
        )
    raise ValueError(f"unsupported dialect: {dialect!r}")
