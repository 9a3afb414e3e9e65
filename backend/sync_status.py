"""
Canonical status values for sync_jobs.status and sync_logs columns.

Single source of truth: import this everywhere job/log strings are written or compared.
Plain class constants (not Python Enum) so the values serialize to bare strings
naturally for Supabase inserts without .value unwrapping.

Job state machine:
    PENDING → IN_PROGRESS → COMPLETED
                          → FAILED
                          → CANCELLED
"""


class JobStatus:
    PENDING = "PENDING"          # reserved; job row created by a scheduler, not started
    IN_PROGRESS = "IN_PROGRESS"  # orchestrator is reading/writing
    COMPLETED = "COMPLETED"      # run finished with no row errors
    FAILED = "FAILED"            # run aborted, or finished with row errors; see error_message
    CANCELLED = "CANCELLED"      # loop stopped before the run started

    ALL = frozenset({PENDING, IN_PROGRESS, COMPLETED, FAILED, CANCELLED})
    FINISHED = frozenset({COMPLETED, FAILED, CANCELLED})

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls.ALL


class SyncOperation:
    """One per create/update/skip/error decision in sync_logs.operation."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SKIP = "SKIP"
    ERROR = "ERROR"

    ALL = frozenset({CREATE, UPDATE, SKIP, ERROR})


class LogStatus:
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"

    ALL = frozenset({SUCCESS, SKIPPED, ERROR})
