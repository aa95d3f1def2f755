import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from loguru import logger
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    case,
    or_,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from webhook_retry.common.config import DEFAULT_MAX_ATTEMPTS, SQLStoreConfig, StoreType
from webhook_retry.common.metrics import metrics
from webhook_retry.common.models import TaskStatus, WebhookTask, utcnow


Clock = Callable[[], datetime]


class TaskStore(ABC):
    """Durable bookkeeping of webhook delivery tasks.

    Only ``enqueue`` creates tasks. Every other mutation is conditional on the
    task still being ``pending``, so terminal tasks are never touched again and
    the mutating calls return ``False`` instead of raising for them.
    """

    def __init__(
        self,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Clock] = None,
    ):
        if default_max_attempts < 1:
            raise ValueError("default_max_attempts must be at least 1")
        self.default_max_attempts = default_max_attempts
        self.clock = clock or utcnow

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def enqueue(
        self,
        target_url: str,
        payload: Any,
        max_attempts: Optional[int] = None,
        initial_delay: float = 0,
    ) -> str:
        """Persist a new pending task and return its id.

        ``initial_delay`` is in seconds. Persistence errors propagate: the
        webhook is not scheduled when this raises.
        """
        task = self._build_task(target_url, payload, max_attempts, initial_delay)
        try:
            await self._insert(task)
        except Exception as e:
            metrics.enqueue_errors.labels(store=self.name).inc()
            logger.error(f"Failed to enqueue webhook for {target_url}: {e}")
            raise

        metrics.tasks_enqueued_total.labels(store=self.name).inc()
        logger.debug(
            f"Enqueued webhook task {task.id} for {target_url} "
            f"(max_attempts={task.max_attempts}, due={task.next_attempt_at.isoformat()})"
        )
        return task.id

    def _build_task(
        self,
        target_url: str,
        payload: Any,
        max_attempts: Optional[int],
        initial_delay: float,
    ) -> WebhookTask:
        parsed = urlparse(target_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid webhook target URL: {target_url!r}")
        if max_attempts is None:
            max_attempts = self.default_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Webhook payload is not JSON serializable: {e}") from e

        now = self.clock()
        return WebhookTask(
            id=str(uuid.uuid4()),
            target_url=target_url,
            payload=payload,
            attempts=0,
            max_attempts=max_attempts,
            next_attempt_at=now + timedelta(seconds=initial_delay),
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _check_limit(limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must not be negative")

    async def close(self) -> None:
        """Release connections held by the store."""

    @abstractmethod
    async def _insert(self, task: WebhookTask) -> None:
        pass

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[WebhookTask]:
        pass

    @abstractmethod
    async def list_tasks(
        self, status: Optional[TaskStatus] = None, limit: int = 100
    ) -> List[WebhookTask]:
        pass

    @abstractmethod
    async def fetch_due(self, limit: int) -> List[WebhookTask]:
        """Pending, unclaimed tasks whose next attempt is due, oldest first."""

    @abstractmethod
    async def claim(self, task_id: str, lease: timedelta) -> bool:
        """Atomically lease a due task to the caller for ``lease``."""

    @abstractmethod
    async def mark_completed(self, task_id: str, attempts: Optional[int] = None) -> bool:
        pass

    @abstractmethod
    async def mark_failed_permanently(
        self, task_id: str, reason: str, attempts: Optional[int] = None
    ) -> bool:
        pass

    @abstractmethod
    async def schedule_retry(
        self, task_id: str, next_attempt: datetime, error: Optional[str] = None
    ) -> bool:
        pass


class InMemoryTaskStore(TaskStore):
    """Process-local store. Only valid for a single dispatcher instance."""

    def __init__(
        self,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Clock] = None,
    ):
        super().__init__(default_max_attempts=default_max_attempts, clock=clock)
        self._tasks: Dict[str, WebhookTask] = {}
        logger.info("Initialized in-memory task store")

    @staticmethod
    def _is_due(task: WebhookTask, now: datetime) -> bool:
        return (
            task.status == TaskStatus.PENDING
            and task.next_attempt_at <= now
            and (task.claimed_until is None or task.claimed_until <= now)
        )

    def _get_pending(self, task_id: str, action: str) -> Optional[WebhookTask]:
        task = self._tasks.get(task_id)
        if task is None:
            logger.warning(f"Cannot {action} unknown task {task_id}")
            return None
        if task.status.is_terminal:
            logger.debug(f"Task {task_id} is already {task.status.value}, not {action}")
            return None
        return task

    async def _insert(self, task: WebhookTask) -> None:
        self._tasks[task.id] = task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Optional[WebhookTask]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(
        self, status: Optional[TaskStatus] = None, limit: int = 100
    ) -> List[WebhookTask]:
        self._check_limit(limit)
        tasks = [t for t in self._tasks.values() if status is None or t.status == status]
        tasks.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in tasks[:limit]]

    async def fetch_due(self, limit: int) -> List[WebhookTask]:
        self._check_limit(limit)
        now = self.clock()
        due = [t for t in self._tasks.values() if self._is_due(t, now)]
        due.sort(key=lambda t: t.created_at)
        return [t.model_copy(deep=True) for t in due[:limit]]

    async def claim(self, task_id: str, lease: timedelta) -> bool:
        now = self.clock()
        task = self._tasks.get(task_id)
        if task is None or not self._is_due(task, now):
            return False
        task.claimed_until = now + lease
        task.updated_at = now
        return True

    async def mark_completed(self, task_id: str, attempts: Optional[int] = None) -> bool:
        task = self._get_pending(task_id, "complete")
        if task is None:
            return False
        if attempts is not None and attempts > task.max_attempts:
            logger.warning(f"Refusing to record {attempts} attempts on task {task_id}")
            return False

        now = self.clock()
        if attempts is not None:
            task.attempts = attempts
        task.status = TaskStatus.COMPLETED
        task.completed_at = now
        task.updated_at = now
        task.claimed_until = None
        return True

    async def mark_failed_permanently(
        self, task_id: str, reason: str, attempts: Optional[int] = None
    ) -> bool:
        task = self._get_pending(task_id, "fail")
        if task is None:
            return False
        if attempts is not None and attempts > task.max_attempts:
            logger.warning(f"Refusing to record {attempts} attempts on task {task_id}")
            return False

        if attempts is not None:
            task.attempts = attempts
        task.status = TaskStatus.FAILED
        task.last_error = reason
        task.updated_at = self.clock()
        task.claimed_until = None
        return True

    async def schedule_retry(
        self, task_id: str, next_attempt: datetime, error: Optional[str] = None
    ) -> bool:
        task = self._get_pending(task_id, "retry")
        if task is None:
            return False
        if task.attempts + 1 > task.max_attempts:
            logger.warning(f"Task {task_id} has no attempts left to schedule")
            return False

        task.attempts += 1
        task.next_attempt_at = max(task.next_attempt_at, next_attempt)
        task.last_error = error
        task.updated_at = self.clock()
        task.claimed_until = None
        return True


Base = declarative_base()


class WebhookTaskRecord(Base):
    """Row of the ``webhook_queue`` table. Timestamps are naive UTC."""

    __tablename__ = "webhook_queue"

    id = Column(String(36), primary_key=True)
    target_url = Column(String(2048), nullable=False)
    payload = Column(JSON, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    next_attempt_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    claimed_until = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_webhook_queue_due", "status", "next_attempt_at"),
    )

    def __repr__(self):
        return (
            f"<WebhookTaskRecord(id='{self.id}', status='{self.status}', "
            f"attempts={self.attempts}/{self.max_attempts})>"
        )


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}


def async_database_url(url: str) -> str:
    """Select the asyncio driver for a plain ``sqlite://`` or ``postgresql://`` URL."""
    parsed = make_url(url)
    driver = ASYNC_DRIVERS.get(parsed.drivername)
    if driver:
        parsed = parsed.set(drivername=driver)
    return parsed.render_as_string(hide_password=False)


def create_sql_engine(config: SQLStoreConfig) -> AsyncEngine:
    url = make_url(async_database_url(config.url))
    engine_kwargs: Dict[str, Any] = {"echo": config.echo}
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **engine_kwargs)


class SQLTaskStore(TaskStore):
    """Relational store backed by SQLAlchemy's asyncio extension.

    State transitions are single conditional UPDATE statements, so the row
    count tells whether this caller won the transition. ``claim`` relies on
    that to hand each due task to exactly one dispatcher run.

    Tables are created on first use when ``create_tables`` is set. An
    in-memory SQLite database lives on one shared connection, so units of
    work on it are serialized.
    """

    def __init__(
        self,
        config: SQLStoreConfig,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Clock] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        super().__init__(default_max_attempts=default_max_attempts, clock=clock)
        self.engine = engine or create_sql_engine(config)
        self.Session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

        self._ready = not config.create_tables
        self._init_lock = asyncio.Lock()
        shared = isinstance(self.engine.sync_engine.pool, StaticPool)
        self._lock = asyncio.Lock() if shared else nullcontext()

        logger.info(f"Initialized SQL task store on {self.engine.url.render_as_string()}")

    async def initialize(self) -> None:
        """Create the ``webhook_queue`` table if it does not exist yet."""
        if self._ready:
            return
        async with self._init_lock:
            if self._ready:
                return
            async with self._lock:
                async with self.engine.begin() as connection:
                    await connection.run_sync(Base.metadata.create_all)
            self._ready = True

    async def close(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def _session(self, write: bool = False):
        await self.initialize()
        async with self._lock:
            if write:
                async with self.Session.begin() as session:
                    yield session
            else:
                async with self.Session() as session:
                    yield session

    @staticmethod
    def _to_task(record: WebhookTaskRecord) -> WebhookTask:
        return WebhookTask(
            id=record.id,
            target_url=record.target_url,
            payload=record.payload,
            attempts=record.attempts,
            max_attempts=record.max_attempts,
            next_attempt_at=_from_db(record.next_attempt_at),
            status=TaskStatus(record.status),
            created_at=_from_db(record.created_at),
            updated_at=_from_db(record.updated_at),
            completed_at=_from_db(record.completed_at),
            last_error=record.last_error,
            claimed_until=_from_db(record.claimed_until),
        )

    async def _transition(self, task_id: str, action: str, *conditions, **values) -> bool:
        statement = (
            update(WebhookTaskRecord)
            .where(
                WebhookTaskRecord.id == task_id,
                WebhookTaskRecord.status == TaskStatus.PENDING.value,
                *conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session(write=True) as session:
                rowcount = (await session.execute(statement)).rowcount
        except SQLAlchemyError as e:
            logger.error(f"Error trying to {action} task {task_id}: {e}")
            raise

        if rowcount == 0:
            logger.debug(f"Did not {action} task {task_id}: not pending, not found or out of attempts")
            return False
        return True

    async def _insert(self, task: WebhookTask) -> None:
        record = WebhookTaskRecord(
            id=task.id,
            target_url=task.target_url,
            payload=task.payload,
            attempts=task.attempts,
            max_attempts=task.max_attempts,
            next_attempt_at=_to_db(task.next_attempt_at),
            status=task.status.value,
            created_at=_to_db(task.created_at),
            updated_at=_to_db(task.updated_at),
        )
        async with self._session(write=True) as session:
            session.add(record)

    async def get_task(self, task_id: str) -> Optional[WebhookTask]:
        async with self._session() as session:
            record = await session.get(WebhookTaskRecord, task_id)
            return self._to_task(record) if record else None

    async def list_tasks(
        self, status: Optional[TaskStatus] = None, limit: int = 100
    ) -> List[WebhookTask]:
        self._check_limit(limit)
        query = select(WebhookTaskRecord)
        if status is not None:
            query = query.where(WebhookTaskRecord.status == TaskStatus(status).value)
        query = query.order_by(WebhookTaskRecord.created_at).limit(limit)

        async with self._session() as session:
            return [self._to_task(r) for r in (await session.scalars(query)).all()]

    async def fetch_due(self, limit: int) -> List[WebhookTask]:
        self._check_limit(limit)
        now = _to_db(self.clock())
        query = (
            select(WebhookTaskRecord)
            .where(
                WebhookTaskRecord.status == TaskStatus.PENDING.value,
                WebhookTaskRecord.next_attempt_at <= now,
                or_(
                    WebhookTaskRecord.claimed_until.is_(None),
                    WebhookTaskRecord.claimed_until <= now,
                ),
            )
            .order_by(WebhookTaskRecord.created_at)
            .limit(limit)
        )

        try:
            async with self._session() as session:
                return [self._to_task(r) for r in (await session.scalars(query)).all()]
        except SQLAlchemyError as e:
            logger.error(f"Error fetching due tasks: {e}")
            raise

    async def claim(self, task_id: str, lease: timedelta) -> bool:
        now = self.clock()
        db_now = _to_db(now)
        statement = (
            update(WebhookTaskRecord)
            .where(
                WebhookTaskRecord.id == task_id,
                WebhookTaskRecord.status == TaskStatus.PENDING.value,
                WebhookTaskRecord.next_attempt_at <= db_now,
                or_(
                    WebhookTaskRecord.claimed_until.is_(None),
                    WebhookTaskRecord.claimed_until <= db_now,
                ),
            )
            .values(claimed_until=_to_db(now + lease), updated_at=db_now)
            .execution_options(synchronize_session=False)
        )
        async with self._session(write=True) as session:
            rowcount = (await session.execute(statement)).rowcount
        return rowcount == 1

    async def mark_completed(self, task_id: str, attempts: Optional[int] = None) -> bool:
        now = _to_db(self.clock())
        values = {
            "status": TaskStatus.COMPLETED.value,
            "completed_at": now,
            "updated_at": now,
            "claimed_until": None,
        }
        conditions = []
        if attempts is not None:
            values["attempts"] = attempts
            conditions.append(WebhookTaskRecord.max_attempts >= attempts)
        return await self._transition(task_id, "complete", *conditions, **values)

    async def mark_failed_permanently(
        self, task_id: str, reason: str, attempts: Optional[int] = None
    ) -> bool:
        values = {
            "status": TaskStatus.FAILED.value,
            "last_error": reason,
            "updated_at": _to_db(self.clock()),
            "claimed_until": None,
        }
        conditions = []
        if attempts is not None:
            values["attempts"] = attempts
            conditions.append(WebhookTaskRecord.max_attempts >= attempts)
        return await self._transition(task_id, "fail", *conditions, **values)

    async def schedule_retry(
        self, task_id: str, next_attempt: datetime, error: Optional[str] = None
    ) -> bool:
        next_attempt = _to_db(next_attempt)
        return await self._transition(
            task_id,
            "retry",
            WebhookTaskRecord.attempts < WebhookTaskRecord.max_attempts,
            attempts=WebhookTaskRecord.attempts + 1,
            next_attempt_at=case(
                (WebhookTaskRecord.next_attempt_at > next_attempt, WebhookTaskRecord.next_attempt_at),
                else_=next_attempt,
            ),
            last_error=error,
            updated_at=_to_db(self.clock()),
            claimed_until=None,
        )


def create_task_store(
    store_type: StoreType,
    sql_config: Optional[SQLStoreConfig] = None,
    default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> TaskStore:
    if store_type == StoreType.MEMORY:
        return InMemoryTaskStore(default_max_attempts=default_max_attempts)
    elif store_type == StoreType.SQL:
        if not sql_config:
            raise ValueError("SQL store selected but no SQL configuration provided")
        return SQLTaskStore(sql_config, default_max_attempts=default_max_attempts)
    else:
        raise ValueError(f"Unsupported store type: {store_type}")
