"""
Upstream source catalog

Declares, per metric family, which upstream endpoints feed it, how to read
their bodies, and which sources must succeed for a snapshot to be built.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError
from .models import MetricFamily, TimeWindow

USER_SERVICE = "user"
TASK_SERVICE = "task"
POINTS_SERVICE = "points"

TENANT_PARAM = "schoolId"


class MalformedResponse(ValueError):
    pass


#-----------------------------------------------------------------------------
# Body extractors


def extract_total(body: Any) -> float:
    """Read a count from `{data: {total}}` or `{total}` bodies."""
    if isinstance(body, Mapping):
        data = body.get("data")
        if isinstance(data, Mapping) and "total" in data:
            return data["total"]
        if "total" in body:
            return body["total"]
    raise MalformedResponse("response carries no total")


def extract_list(body: Any) -> List[Any]:
    """Read a record list from `{data: [...]}` bodies or a bare list."""
    if isinstance(body, list):
        return body
    if isinstance(body, Mapping):
        data = body.get("data")
        if isinstance(data, list):
            return data
    raise MalformedResponse("response carries no record list")


def extract_transactions(body: Any) -> List[Any]:
    """Read `{data: {transactions: [...]}}`, falling back to a plain list."""
    if isinstance(body, Mapping):
        data = body.get("data")
        if isinstance(data, Mapping) and isinstance(data.get("transactions"), list):
            return data["transactions"]
    return extract_list(body)


EXTRACTORS: Dict[str, Callable[[Any], Any]] = {
    "total": extract_total,
    "list": extract_list,
    "transactions": extract_transactions,
}


#-----------------------------------------------------------------------------
# Specs


@dataclass(frozen=True)
class SourceSpec:
    key: str
    service: str
    path: str
    params: Dict[str, str] = field(default_factory=dict)
    extract: str = "total"
    # Names of the query parameters that carry the window bounds.
    window_params: Optional[Tuple[str, str]] = None

    def request_params(
        self,
        window: Optional[TimeWindow] = None,
        tenant_id: Optional[str] = None,
        extra: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, str]:
        params = dict(self.params)
        if extra:
            params.update(extra)
        if self.window_params and window is not None:
            start_name, end_name = self.window_params
            params[start_name] = window.start.isoformat()
            params[end_name] = window.end.isoformat()
        if tenant_id is not None:
            params[TENANT_PARAM] = tenant_id
        return params

    def parse(self, body: Any) -> Any:
        return EXTRACTORS[self.extract](body)


@dataclass(frozen=True)
class BreakdownSpec:
    """
    A count per category item, fetched as one source per item

    Items are either fixed (`items`) or read from a `catalog` source whose
    records carry `_id` and `name`.
    """
    name: str
    base: SourceSpec
    item_param: str
    items: Tuple[str, ...] = ()
    catalog: Optional[SourceSpec] = None

    def item_key(self, label: str) -> str:
        return f"{self.name}:{label}"

    def item_source(self, label: str, value: str) -> SourceSpec:
        params = dict(self.base.params)
        params[self.item_param] = value
        return SourceSpec(
            key=self.item_key(label),
            service=self.base.service,
            path=self.base.path,
            params=params,
            extract=self.base.extract,
            window_params=self.base.window_params,
        )


@dataclass(frozen=True)
class FamilySources:
    family: MetricFamily
    sources: Tuple[SourceSpec, ...]
    tenant_sources: Tuple[SourceSpec, ...]
    required: Tuple[str, ...]
    breakdowns: Tuple[BreakdownSpec, ...] = ()

    def knows(self, key: str) -> bool:
        """Whether a collector run for this family can produce `key`."""
        if any(spec.key == key for spec in self.sources):
            return True
        if any(breakdown.catalog is not None and breakdown.catalog.key == key for breakdown in self.breakdowns):
            return True
        name, _, item = key.partition(":")
        return bool(item) and any(breakdown.name == name for breakdown in self.breakdowns)

    def with_required(self, required: List[str]) -> "FamilySources":
        return FamilySources(
            family=self.family,
            sources=self.sources,
            tenant_sources=self.tenant_sources,
            required=tuple(required),
            breakdowns=self.breakdowns,
        )


def breakdown_values(values: Mapping[str, Any], name: str) -> Dict[str, Any]:
    """Collect the `<name>:<item>` values of one breakdown, keyed by item."""
    prefix = f"{name}:"
    return {key[len(prefix):]: value for key, value in values.items() if key.startswith(prefix)}


#-----------------------------------------------------------------------------
# Catalog

COUNT = {"count": "true"}

TENANT_DIRECTORY = SourceSpec(key="tenants", service=USER_SERVICE, path="/api/schools", extract="list")

TASK_CREATOR_ROLES = ("student", "parent", "teacher", "school_admin", "social_worker", "platform_admin", "system")
TASK_DIFFICULTIES = ("easy", "medium", "hard", "challenging")

USER_SOURCES = FamilySources(
    family=MetricFamily.USER,
    sources=(
        SourceSpec("totalUsers", USER_SERVICE, "/api/users", COUNT),
        SourceSpec("students", USER_SERVICE, "/api/students", COUNT),
        SourceSpec("parents", USER_SERVICE, "/api/parents", COUNT),
        SourceSpec("teachers", USER_SERVICE, "/api/teachers", COUNT),
        SourceSpec("schoolAdmins", USER_SERVICE, "/api/users", {"roles": "school_admin", **COUNT}),
        SourceSpec("activeUsers", USER_SERVICE, "/api/users/active", {"days": "30", **COUNT}),
        SourceSpec("newUsers", USER_SERVICE, "/api/users", COUNT,
                   window_params=("createdAtGte", "createdAtLte")),
    ),
    tenant_sources=(
        SourceSpec("students", USER_SERVICE, "/api/students", COUNT),
        SourceSpec("teachers", USER_SERVICE, "/api/teachers", COUNT),
        SourceSpec("schoolAdmins", USER_SERVICE, "/api/users", {"roles": "school_admin", **COUNT}),
    ),
    required=("totalUsers",),
)

TASK_SOURCES = FamilySources(
    family=MetricFamily.TASK,
    sources=(
        SourceSpec("totalTasks", TASK_SERVICE, "/api/tasks", COUNT),
        SourceSpec("pendingTasks", TASK_SERVICE, "/api/tasks", {"status": "pending", **COUNT}),
        SourceSpec("completedTasks", TASK_SERVICE, "/api/tasks", {"status": "completed", **COUNT}),
        SourceSpec("approvedTasks", TASK_SERVICE, "/api/tasks", {"status": "approved", **COUNT}),
        SourceSpec("rejectedTasks", TASK_SERVICE, "/api/tasks", {"status": "rejected", **COUNT}),
        SourceSpec("expiredTasks", TASK_SERVICE, "/api/tasks", {"status": "expired", **COUNT}),
        SourceSpec("newTasks", TASK_SERVICE, "/api/tasks", COUNT,
                   window_params=("createdAt[gte]", "createdAt[lte]")),
    ),
    tenant_sources=(
        SourceSpec("totalTasks", TASK_SERVICE, "/api/tasks", COUNT),
        SourceSpec("completedTasks", TASK_SERVICE, "/api/tasks", {"status": "approved,completed", **COUNT}),
    ),
    required=("totalTasks",),
    breakdowns=(
        BreakdownSpec(
            name="tasksByCategory",
            base=SourceSpec("tasksByCategory", TASK_SERVICE, "/api/tasks", COUNT),
            item_param="category",
            catalog=SourceSpec("taskCategories", TASK_SERVICE, "/api/tasks/categories", extract="list"),
        ),
        BreakdownSpec(
            name="tasksByCreatorRole",
            base=SourceSpec("tasksByCreatorRole", TASK_SERVICE, "/api/tasks", COUNT),
            item_param="creatorRole",
            items=TASK_CREATOR_ROLES,
        ),
        BreakdownSpec(
            name="tasksByDifficulty",
            base=SourceSpec("tasksByDifficulty", TASK_SERVICE, "/api/tasks", COUNT),
            item_param="difficulty",
            items=TASK_DIFFICULTIES,
        ),
    ),
)

POINT_SOURCES = FamilySources(
    family=MetricFamily.POINT,
    sources=(
        SourceSpec("transactions", POINTS_SERVICE, "/api/points/transactions",
                   extract="transactions", window_params=("startDate", "endDate")),
        SourceSpec("accounts", POINTS_SERVICE, "/api/points/accounts", extract="list"),
    ),
    tenant_sources=(
        SourceSpec("transactions", POINTS_SERVICE, "/api/points/transactions",
                   extract="transactions", window_params=("startDate", "endDate")),
        SourceSpec("accounts", POINTS_SERVICE, "/api/points/accounts", extract="list"),
    ),
    required=("transactions",),
)

BADGE_SOURCES = FamilySources(
    family=MetricFamily.BADGE,
    sources=(
        SourceSpec("awards", USER_SERVICE, "/api/badges/awards",
                   extract="list", window_params=("startDate", "endDate")),
        SourceSpec("badges", USER_SERVICE, "/api/badges", extract="list"),
    ),
    tenant_sources=(
        SourceSpec("awards", USER_SERVICE, "/api/badges/awards",
                   extract="list", window_params=("startDate", "endDate")),
    ),
    required=("awards",),
)

FAMILY_SOURCES: Dict[MetricFamily, FamilySources] = {
    MetricFamily.USER: USER_SOURCES,
    MetricFamily.TASK: TASK_SOURCES,
    MetricFamily.POINT: POINT_SOURCES,
    MetricFamily.BADGE: BADGE_SOURCES,
}


def build_catalog(required_overrides: Optional[Mapping[str, List[str]]] = None) -> Dict[MetricFamily, FamilySources]:
    """
    The default catalog with configured required-source overrides applied

    Raises ConfigurationError when an override names an unknown family or a
    source key the family never fetches.
    """
    catalog = dict(FAMILY_SOURCES)
    for family_name, required in (required_overrides or {}).items():
        try:
            family = MetricFamily(family_name)
        except ValueError:
            raise ConfigurationError(f"required-source override names unknown family '{family_name}'")

        unknown = [key for key in required if not catalog[family].knows(key)]
        if unknown:
            raise ConfigurationError(
                f"required-source override for '{family.value}' names unknown sources: {', '.join(unknown)}"
            )
        catalog[family] = catalog[family].with_required(required)
    return catalog
