from backend_stakewatch.snapshots.engine import DiffConfig, diff_snapshots, validate_snapshots
from backend_stakewatch.snapshots.models import HolderEvent, HolderEventType, HolderSnapshot

__all__ = [
    "DiffConfig",
    "HolderEvent",
    "HolderEventType",
    "HolderSnapshot",
    "diff_snapshots",
    "validate_snapshots",
]
