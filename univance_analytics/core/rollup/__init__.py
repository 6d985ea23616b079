from .errors import (
    ErrorKind,
    RollupError,
    SourceUnavailable,
    InsufficientSources,
    RollupTimeout,
    ConfigurationError,
    Conflict
)

from .models import (
    GLOBAL_SCOPE,

    MetricFamily,
    JobType,
    JobStatus,
    TimeWindow,
    Tenant,
    ScopedChild,
    MetricSnapshot,
    JobError,
    RollupJob,
    FamilySucceeded,
    FamilyFailed
)

from .collector import Collector, CollectorResult, UpstreamCollectorFactory
from .aggregator import Aggregator, AggregationOutput
from .store import MemoryRollupStore, PgRollupStore, RollupStoreProtocol
from .upstream import UpstreamClient, UpstreamError, SystemTokenIssuer
