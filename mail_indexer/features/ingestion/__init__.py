"""
Mailbox ingestion feature package.

Every layer of the ingestion pipeline lives in this slice: domain models and
calendar keys, Redis/filesystem repositories, the worker, rollup and
scheduling services, and the long-running job runners.

Only domain types are re-exported here; import services and jobs from
their subpackages.
"""

from .domain.models import DayNote, IngestionJob, IngestionJobMessage, Message  # noqa: F401
