"""
Persistence interface and a JSON-file implementation.

`Store` is the contract the scan orchestrator and briefing runner consume.
`JsonStore` keeps one JSON file per collection under the data directory,
each holding a pydantic container model, and serializes writes with a lock.
"""

import logging
import threading
import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .config import Config
from .errors import DuplicateSourceError, NotFoundError, StorageError
from .models import (
    Briefing,
    BriefingFeedback,
    BriefingPreference,
    BriefingPreferencesFile,
    BriefingsFile,
    EmailProvider,
    Notification,
    NotificationsFile,
    ScanConfig,
    ScanConfigsFile,
    ScanLog,
    ScanLogsFile,
    ScanStatus,
    Source,
    SourcesFile,
    Task,
    TaskSourceType,
    TaskStatus,
    TasksFile,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=BaseModel)


class Store(Protocol):
    # Scan configs
    def get_scan_config(self, config_id: str) -> Optional[ScanConfig]: ...
    def find_scan_config(
        self, workspace_id: str, user_id: str, provider: Optional[EmailProvider] = None
    ) -> Optional[ScanConfig]: ...
    def list_enabled_scan_configs(self) -> List[ScanConfig]: ...
    def upsert_scan_config(self, config: ScanConfig) -> ScanConfig: ...
    def update_scan_config(self, config_id: str, **fields: Any) -> ScanConfig: ...
    def delete_scan_config(self, config_id: str) -> None: ...

    # Scan logs
    def create_scan_log(self, log: ScanLog) -> ScanLog: ...
    def finalize_scan_log(self, log: ScanLog) -> ScanLog: ...
    def list_scan_logs(self, config_id: str, limit: int = 10) -> List[ScanLog]: ...

    # Sources
    def find_source(
        self, workspace_id: str, type: TaskSourceType, external_id: str
    ) -> Optional[Source]: ...
    def create_source(self, source: Source) -> Source: ...

    # Tasks
    def create_task(self, task: Task) -> Task: ...
    def list_tasks(
        self, workspace_id: str, statuses: Optional[List[TaskStatus]] = None
    ) -> List[Task]: ...

    # Briefings
    def get_briefing(self, workspace_id: str, user_id: str, day: date) -> Optional[Briefing]: ...
    def upsert_briefing(self, briefing: Briefing) -> Briefing: ...
    def list_briefings(self, workspace_id: str, user_id: str, limit: int = 30) -> List[Briefing]: ...
    def set_briefing_feedback(
        self,
        briefing_id: str,
        workspace_id: str,
        user_id: str,
        feedback: BriefingFeedback,
        notes: Optional[str] = None,
    ) -> Briefing: ...

    # Briefing preferences
    def get_briefing_preference(
        self, workspace_id: str, user_id: str
    ) -> Optional[BriefingPreference]: ...
    def upsert_briefing_preference(self, preference: BriefingPreference) -> BriefingPreference: ...
    def list_enabled_briefing_preferences(self) -> List[BriefingPreference]: ...

    # Notifications
    def create_notification(self, notification: Notification) -> Notification: ...
    def list_notifications(self, workspace_id: str, user_id: str) -> List[Notification]: ...


class JsonStore:
    """
    File-backed Store. Good for a single process; the lock makes concurrent
    scans within that process safe.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: Config) -> "JsonStore":
        return cls(config.data_dir)

    # -----------------------------------------------------------------------
    # JSON helpers
    # -----------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    def _load(self, name: str, model: Type[F]) -> F:
        path = self._path(name)
        if not path.exists():
            return model()
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to read data file {path}: {e}") from e
        try:
            return model.model_validate_json(text)
        except ValidationError as e:
            raise StorageError(f"Corrupt data file {path}: {e}") from e

    def _save(self, name: str, container: BaseModel) -> None:
        path = self._path(name)
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(container.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise StorageError(f"Failed to write data file {path}: {e}") from e

    def _mutate(self, name: str, model: Type[F], fn: Callable[[F], Any]) -> Any:
        with self._lock:
            container = self._load(name, model)
            result = fn(container)
            self._save(name, container)
            return result

    def ensure_data_files_exist(self) -> None:
        """Create the data directory and empty collection files."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for name, model in (
            ("scan_configs", ScanConfigsFile),
            ("scan_logs", ScanLogsFile),
            ("sources", SourcesFile),
            ("tasks", TasksFile),
            ("briefings", BriefingsFile),
            ("briefing_preferences", BriefingPreferencesFile),
            ("notifications", NotificationsFile),
        ):
            if not self._path(name).exists():
                self._save(name, model())

    # -----------------------------------------------------------------------
    # Scan configs
    # -----------------------------------------------------------------------

    def get_scan_config(self, config_id: str) -> Optional[ScanConfig]:
        with self._lock:
            for c in self._load("scan_configs", ScanConfigsFile).configs:
                if c.id == config_id:
                    return c
        return None

    def find_scan_config(
        self,
        workspace_id: str,
        user_id: str,
        provider: Optional[EmailProvider] = None,
    ) -> Optional[ScanConfig]:
        with self._lock:
            for c in self._load("scan_configs", ScanConfigsFile).configs:
                if c.workspace_id != workspace_id or c.user_id != user_id:
                    continue
                if provider is not None and c.provider != EmailProvider(provider):
                    continue
                return c
        return None

    def list_scan_configs(self) -> List[ScanConfig]:
        with self._lock:
            return list(self._load("scan_configs", ScanConfigsFile).configs)

    def list_enabled_scan_configs(self) -> List[ScanConfig]:
        return [c for c in self.list_scan_configs() if c.enabled]

    def upsert_scan_config(self, config: ScanConfig) -> ScanConfig:
        """Insert or replace the config for (workspace, user, provider)."""

        def apply(container: ScanConfigsFile) -> ScanConfig:
            for i, existing in enumerate(container.configs):
                if (
                    existing.workspace_id == config.workspace_id
                    and existing.user_id == config.user_id
                    and existing.provider == config.provider
                ):
                    merged = config.model_copy(
                        update={"id": existing.id, "created_at": existing.created_at}
                    )
                    container.configs[i] = merged
                    return merged
            container.configs.append(config)
            return config

        return self._mutate("scan_configs", ScanConfigsFile, apply)

    def update_scan_config(self, config_id: str, **fields: Any) -> ScanConfig:
        def apply(container: ScanConfigsFile) -> ScanConfig:
            for i, existing in enumerate(container.configs):
                if existing.id == config_id:
                    data = existing.model_dump()
                    data.update(fields)
                    try:
                        updated = ScanConfig.model_validate(data)
                    except ValidationError as e:
                        raise StorageError(f"Invalid update for scan config {config_id}: {e}") from e
                    container.configs[i] = updated
                    return updated
            raise NotFoundError(f"Config not found: {config_id}")

        return self._mutate("scan_configs", ScanConfigsFile, apply)

    def delete_scan_config(self, config_id: str) -> None:
        def apply(container: ScanConfigsFile) -> None:
            before = len(container.configs)
            container.configs = [c for c in container.configs if c.id != config_id]
            if len(container.configs) == before:
                raise NotFoundError(f"Config not found: {config_id}")

        self._mutate("scan_configs", ScanConfigsFile, apply)

    # -----------------------------------------------------------------------
    # Scan logs
    # -----------------------------------------------------------------------

    def create_scan_log(self, log: ScanLog) -> ScanLog:
        def apply(container: ScanLogsFile) -> ScanLog:
            container.logs.append(log)
            return log

        return self._mutate("scan_logs", ScanLogsFile, apply)

    def finalize_scan_log(self, log: ScanLog) -> ScanLog:
        """Write the final state of a running log. Finalized logs are immutable."""
        if log.status == ScanStatus.RUNNING:
            raise StorageError(f"Scan log {log.id} must be completed or failed to finalize")

        def apply(container: ScanLogsFile) -> ScanLog:
            for i, existing in enumerate(container.logs):
                if existing.id == log.id:
                    if existing.status != ScanStatus.RUNNING:
                        raise StorageError(f"Scan log {log.id} is already {existing.status.value}")
                    container.logs[i] = log
                    return log
            raise NotFoundError(f"Scan log not found: {log.id}")

        return self._mutate("scan_logs", ScanLogsFile, apply)

    def list_scan_logs(self, config_id: str, limit: int = 10) -> List[ScanLog]:
        with self._lock:
            logs = [l for l in self._load("scan_logs", ScanLogsFile).logs if l.config_id == config_id]
        logs.sort(key=lambda l: l.started_at, reverse=True)
        return logs[:limit]

    # -----------------------------------------------------------------------
    # Sources
    # -----------------------------------------------------------------------

    def find_source(
        self,
        workspace_id: str,
        type: TaskSourceType,
        external_id: str,
    ) -> Optional[Source]:
        with self._lock:
            for s in self._load("sources", SourcesFile).sources:
                if s.workspace_id == workspace_id and s.type == type and s.external_id == external_id:
                    return s
        return None

    def create_source(self, source: Source) -> Source:
        """Insert a Source; (workspace, type, external_id) is unique."""

        def apply(container: SourcesFile) -> Source:
            if source.external_id is not None:
                for s in container.sources:
                    if (
                        s.workspace_id == source.workspace_id
                        and s.type == source.type
                        and s.external_id == source.external_id
                    ):
                        raise DuplicateSourceError(
                            f"Source already exists for {source.type.value} {source.external_id}"
                        )
            container.sources.append(source)
            return source

        return self._mutate("sources", SourcesFile, apply)

    # -----------------------------------------------------------------------
    # Tasks
    # -----------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        def apply(container: TasksFile) -> Task:
            container.tasks.append(task)
            return task

        return self._mutate("tasks", TasksFile, apply)

    def list_tasks(
        self,
        workspace_id: str,
        statuses: Optional[List[TaskStatus]] = None,
    ) -> List[Task]:
        with self._lock:
            tasks = [t for t in self._load("tasks", TasksFile).tasks if t.workspace_id == workspace_id]
        if statuses is not None:
            tasks = [t for t in tasks if t.status in statuses]
        return tasks

    # -----------------------------------------------------------------------
    # Briefings
    # -----------------------------------------------------------------------

    def get_briefing(self, workspace_id: str, user_id: str, day: date) -> Optional[Briefing]:
        with self._lock:
            for b in self._load("briefings", BriefingsFile).briefings:
                if b.workspace_id == workspace_id and b.user_id == user_id and b.briefing_date == day:
                    return b
        return None

    def upsert_briefing(self, briefing: Briefing) -> Briefing:
        """Insert or overwrite the briefing for (workspace, user, date)."""

        def apply(container: BriefingsFile) -> Briefing:
            for i, existing in enumerate(container.briefings):
                if (
                    existing.workspace_id == briefing.workspace_id
                    and existing.user_id == briefing.user_id
                    and existing.briefing_date == briefing.briefing_date
                ):
                    # Regeneration replaces content; earlier feedback no longer applies
                    merged = briefing.model_copy(update={"id": existing.id})
                    container.briefings[i] = merged
                    return merged
            container.briefings.append(briefing)
            return briefing

        return self._mutate("briefings", BriefingsFile, apply)

    def list_briefings(self, workspace_id: str, user_id: str, limit: int = 30) -> List[Briefing]:
        with self._lock:
            briefings = [
                b
                for b in self._load("briefings", BriefingsFile).briefings
                if b.workspace_id == workspace_id and b.user_id == user_id
            ]
        briefings.sort(key=lambda b: b.briefing_date, reverse=True)
        return briefings[:limit]

    def set_briefing_feedback(
        self,
        briefing_id: str,
        workspace_id: str,
        user_id: str,
        feedback: BriefingFeedback,
        notes: Optional[str] = None,
    ) -> Briefing:
        def apply(container: BriefingsFile) -> Briefing:
            for i, existing in enumerate(container.briefings):
                if (
                    existing.id == briefing_id
                    and existing.workspace_id == workspace_id
                    and existing.user_id == user_id
                ):
                    updated = existing.model_copy(
                        update={"feedback": BriefingFeedback(feedback), "feedback_notes": notes or None}
                    )
                    container.briefings[i] = updated
                    return updated
            raise NotFoundError("Briefing not found")

        return self._mutate("briefings", BriefingsFile, apply)

    # -----------------------------------------------------------------------
    # Briefing preferences
    # -----------------------------------------------------------------------

    def get_briefing_preference(self, workspace_id: str, user_id: str) -> Optional[BriefingPreference]:
        with self._lock:
            for p in self._load("briefing_preferences", BriefingPreferencesFile).preferences:
                if p.workspace_id == workspace_id and p.user_id == user_id:
                    return p
        return None

    def upsert_briefing_preference(self, preference: BriefingPreference) -> BriefingPreference:
        def apply(container: BriefingPreferencesFile) -> BriefingPreference:
            for i, existing in enumerate(container.preferences):
                if existing.workspace_id == preference.workspace_id and existing.user_id == preference.user_id:
                    merged = preference.model_copy(
                        update={"id": existing.id, "created_at": existing.created_at}
                    )
                    container.preferences[i] = merged
                    return merged
            stored = preference.model_copy(
                update={
                    "id": preference.id or str(uuid.uuid4()),
                    "created_at": preference.created_at or datetime.now(timezone.utc),
                }
            )
            container.preferences.append(stored)
            return stored

        return self._mutate("briefing_preferences", BriefingPreferencesFile, apply)

    def list_enabled_briefing_preferences(self) -> List[BriefingPreference]:
        with self._lock:
            prefs = self._load("briefing_preferences", BriefingPreferencesFile).preferences
        return [p for p in prefs if p.enabled]

    # -----------------------------------------------------------------------
    # Notifications
    # -----------------------------------------------------------------------

    def create_notification(self, notification: Notification) -> Notification:
        def apply(container: NotificationsFile) -> Notification:
            container.notifications.append(notification)
            return notification

        return self._mutate("notifications", NotificationsFile, apply)

    def list_notifications(self, workspace_id: str, user_id: str) -> List[Notification]:
        with self._lock:
            return [
                n
                for n in self._load("notifications", NotificationsFile).notifications
                if n.workspace_id == workspace_id and n.user_id == user_id
            ]
