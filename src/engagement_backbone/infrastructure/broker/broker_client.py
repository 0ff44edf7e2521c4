"""
Broker Client with Connection State Tracking

Architecture:
    BrokerClient (Public API)
        ├── ConnectionStateMachine (disconnected → connecting → ready → ...)
        ├── ConnectionManager (Pool lifecycle, URL resolution, retry policy)
        ├── OperationExecutor (Strict commands with error mapping)
        └── HealthMonitor (Periodic ping driving state transitions)

One process owns a single primary BrokerClient. Consumers that issue
blocking or long-running commands get a duplicated client (own pool, own
command queue) via duplicate(); duplicates mirror the primary's error and
close transitions so that workers pause together.

Author: Platform Engineering
Date: 2026-03-04
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

import orjson
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import (
    AuthenticationError,
    ConnectionError,
    ReadOnlyError,
    RedisError,
    ResponseError,
    TimeoutError,
)

from engagement_backbone.config.settings import get_settings
from engagement_backbone.core.exceptions import (
    BrokerAuthenticationError,
    BrokerError,
    BrokerScriptLimitError,
    BrokerUnavailableError,
)
from engagement_backbone.core.logging.logger import get_logger

logger = get_logger(__name__)

# Replies meaning a script hit a server resource limit
SCRIPT_LIMIT_MARKERS = ("BUSY", "OOM", "too many", "unpack", "stack overflow")


class BrokerState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    CLOSING = "closing"
    ERROR = "error"
    RECONNECTING = "reconnecting"


StateListener = Callable[[BrokerState, BrokerState], Any]


def redact_url(url: str | None) -> str | None:
    """Strip credentials from a broker URL for logging."""
    if not url:
        return url
    parts = urlsplit(url)
    host = parts.hostname or ""
    port = f":{parts.port}" if parts.port else ""
    return f"{parts.scheme}://{host}{port}{parts.path}"


# =============================================================================
# LAYER 1: CONNECTION STATE MACHINE
# Tracks the connection state and notifies listeners on every transition
# =============================================================================


class ConnectionStateMachine:
    """
    Connection state with listener fan-out.

    Responsibility: Hold the current state, notify listeners on change and
    expose a ready event that waiters can block on.

    Listeners receive (previous, current). Async listeners are scheduled as
    tasks; listener failures are logged and never break the transition.
    """

    def __init__(self, name: str):
        self._name = name
        self._state = BrokerState.DISCONNECTED
        self._listeners: list[StateListener] = []
        self._ready = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> BrokerState:
        return self._state

    def add_listener(self, listener: StateListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def transition(self, new_state: BrokerState, reason: str | None = None) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state

        if new_state == BrokerState.READY:
            self._ready.set()
        else:
            self._ready.clear()

        log = logger.warning if new_state in (BrokerState.ERROR, BrokerState.RECONNECTING) else logger.info
        log(
            "Broker state changed",
            stage="BROKER.STATE",
            connection=self._name,
            previous=previous.value,
            state=new_state.value,
            reason=reason,
        )

        for listener in list(self._listeners):
            try:
                result = listener(previous, new_state)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.warning(
                    "Broker state listener failed",
                    stage="BROKER.STATE",
                    connection=self._name,
                    error=str(e),
                )

    async def wait_ready(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


# =============================================================================
# LAYER 2: CONNECTION MANAGEMENT
# Pool construction, retry policy and reconnection
# =============================================================================


class LinearCappedBackoff(AbstractBackoff):
    """Reconnect delay of min(failures * step, cap)."""

    def __init__(self, step_seconds: float = 0.1, cap_seconds: float = 2.0):
        self._step = step_seconds
        self._cap = cap_seconds

    def reset(self) -> None:
        pass

    def compute(self, failures: int) -> float:
        return min(failures * self._step, self._cap)


class ConnectionManager:
    """
    Manages the connection pool of one BrokerClient.

    Responsibility: Connection establishment, pooling, and cleanup.

    Pool Configuration:
    - decode_responses=True (strings, not bytes)
    - Retry: linear capped backoff (100ms steps, 2s cap)
    - Retries per request: 3 for the primary; unbounded (-1) for consumers
    """

    def __init__(
        self,
        url: str,
        settings,
        max_retries: int | None,
        keep_alive: bool = True,
    ):
        self._url = url
        self._settings = settings
        self._max_retries = -1 if max_retries is None else max_retries
        self._keep_alive = keep_alive
        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def max_retries(self) -> int | None:
        return None if self._max_retries < 0 else self._max_retries

    def _build_pool(self) -> ConnectionPool:
        broker = self._settings.broker
        retry = Retry(
            LinearCappedBackoff(
                step_seconds=broker.BROKER_RETRY_STEP_MS / 1000,
                cap_seconds=broker.BROKER_RETRY_MAX_DELAY_MS / 1000,
            ),
            self._max_retries,
        )
        return ConnectionPool.from_url(
            self._url,
            max_connections=broker.BROKER_MAX_CONNECTIONS,
            socket_timeout=broker.BROKER_SOCKET_TIMEOUT,
            socket_connect_timeout=broker.BROKER_SOCKET_CONNECT_TIMEOUT,
            socket_keepalive=self._keep_alive,
            retry=retry,
            retry_on_error=[ConnectionError, TimeoutError],
            health_check_interval=30,
            decode_responses=True,
        )

    async def connect(self, ready_check: bool = True) -> redis.Redis:
        """
        Create the pool and client, optionally verifying with PING.

        STAGE-BROKER.2: Connection establishment

        Raises:
            ConnectionError / TimeoutError / AuthenticationError from redis
        """
        if self._client is None:
            self._pool = self._build_pool()
            self._client = redis.Redis(connection_pool=self._pool)
        if ready_check:
            await self._client.ping()
        return self._client

    async def reset(self) -> None:
        """Drop every pooled connection; the next command reconnects."""
        if self._pool is not None:
            await self._pool.disconnect(inuse_connections=True)

    async def disconnect(self) -> None:
        """
        Close client and pool.

        STAGE-BROKER.3: Connection cleanup
        """
        if self._client is not None:
            await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()
        self._client = None
        self._pool = None

    def get_client(self) -> redis.Redis | None:
        return self._client


# =============================================================================
# LAYER 3: OPERATION EXECUTOR
# Strict commands with consistent error mapping
# =============================================================================


class OperationExecutor:
    """
    Executes broker commands with consistent error handling.

    Responsibility: Command execution, error mapping and logging.

    Error Handling Strategy:
    - Not ready → BrokerUnavailableError (no round-trip attempted)
    - Connection/timeout errors → BrokerUnavailableError, state → ERROR
    - READONLY reply (fail-over) → pool reset, BrokerUnavailableError
    - Authentication errors → BrokerAuthenticationError (fatal)
    - Script rejections → BrokerScriptLimitError
    - Other server replies → BrokerError
    """

    def __init__(self, owner: "BrokerClient"):
        self._owner = owner
        self._scripts: dict[str, Any] = {}

    def _client(self) -> redis.Redis:
        client = self._owner.raw_client
        if client is None or not self._owner.is_ready:
            raise BrokerUnavailableError(
                "Broker not ready",
                details={"connection": self._owner.name, "state": self._owner.state.value},
            )
        return client

    async def run(self, stage: str, fn: Callable[[redis.Redis], Any], **context) -> Any:
        """
        Run one command (or a pipeline) against the current client.

        Args:
            stage: Log stage tag (e.g. "BROKER.GET")
            fn: Callable receiving the redis client and returning an awaitable
            **context: Extra log/error context
        """
        client = self._client()
        try:
            return await fn(client)
        except ReadOnlyError as e:
            logger.warning("Broker replica is read-only, reconnecting", stage=stage, error=str(e), **context)
            await self._owner.handle_connection_error(e)
            raise BrokerUnavailableError(message=f"Broker read-only: {e}", details=context)
        except AuthenticationError as e:
            logger.error("Broker authentication failed", stage=stage, error=str(e), **context)
            raise BrokerAuthenticationError(message=f"Broker authentication failed: {e}", details=context)
        except (ConnectionError, TimeoutError, OSError) as e:
            logger.warning("Broker command failed", stage=stage, error=str(e), **context)
            await self._owner.handle_connection_error(e)
            raise BrokerUnavailableError(message=f"Broker unavailable: {e}", details=context)
        except ResponseError as e:
            text = str(e)
            if any(marker in text for marker in SCRIPT_LIMIT_MARKERS):
                raise BrokerScriptLimitError(message=f"Broker rejected script: {e}", details=context)
            logger.error("Broker command rejected", stage=stage, error=text, **context)
            raise BrokerError(message=f"Broker command rejected: {e}", details=context)
        except RedisError as e:
            logger.error("Broker command failed", stage=stage, error=str(e), **context)
            raise BrokerError(message=f"Broker command failed: {e}", details=context)

    # -------------------------------------------------------------------------
    # Basic Operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self.run("BROKER.GET", lambda c: c.get(key), key=key)

    async def set(self, key: str, value: str, ex: int | None = None, px: int | None = None) -> bool:
        result = await self.run("BROKER.SET", lambda c: c.set(key, value, ex=ex, px=px), key=key)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.run("BROKER.DEL", lambda c: c.delete(*keys), keys=len(keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.run("BROKER.EXISTS", lambda c: c.exists(key), key=key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.run("BROKER.EXPIRE", lambda c: c.expire(key, seconds), key=key))

    async def scan(self, match: str, count: int = 1000, cursor: int = 0) -> tuple[int, list[str]]:
        return await self.run(
            "BROKER.SCAN", lambda c: c.scan(cursor=cursor, match=match, count=count), match=match
        )

    async def scan_iter(self, match: str, count: int = 1000) -> AsyncIterator[list[str]]:
        """Yield SCAN pages until the cursor wraps."""
        cursor = 0
        while True:
            cursor, keys = await self.scan(match, count=count, cursor=cursor)
            if keys:
                yield keys
            if int(cursor) == 0:
                break

    # -------------------------------------------------------------------------
    # Hash Operations (run metrics)
    # -------------------------------------------------------------------------

    async def hset(self, name: str, mapping: dict[str, Any]) -> int:
        return await self.run("BROKER.HSET", lambda c: c.hset(name, mapping=mapping), name=name)

    async def hgetall(self, name: str) -> dict[str, str]:
        return await self.run("BROKER.HGETALL", lambda c: c.hgetall(name), name=name)

    async def hincrby(self, name: str, field: str, amount: int = 1) -> int:
        return await self.run(
            "BROKER.HINCRBY", lambda c: c.hincrby(name, field, amount), name=name, field=field
        )

    # -------------------------------------------------------------------------
    # Pub/Sub and scripting
    # -------------------------------------------------------------------------

    async def publish(self, channel: str, message: str) -> int:
        return await self.run("BROKER.PUBLISH", lambda c: c.publish(channel, message), channel=channel)

    async def run_script(self, source: str, keys: list[str], args: list[Any], stage: str = "BROKER.EVAL") -> Any:
        """
        Run a Lua script by SHA, loading it on first use.

        redis-py's AsyncScript retries with SCRIPT LOAD on NOSCRIPT.
        """
        script = self._scripts.get(source)
        if script is None:
            script = self._client().register_script(source)
            self._scripts[source] = script
        return await self.run(stage, lambda c: script(keys=keys, args=args, client=c))

    def script(self, source: str):
        """Return the registered AsyncScript for use inside a pipeline."""
        script = self._scripts.get(source)
        if script is None:
            script = self._client().register_script(source)
            self._scripts[source] = script
        return script

    async def flushdb(self) -> bool:
        return bool(await self.run("BROKER.FLUSH", lambda c: c.flushdb()))


# =============================================================================
# LAYER 4: HEALTH MONITORING
# Periodic ping driving state transitions and reconnection
# =============================================================================


class HealthMonitor:
    """
    Background ping loop.

    Responsibility: Detect broker loss and recovery, drive the state machine
    and trigger reconnection. Listeners observe error/ready within one
    interval (default 2s).
    """

    def __init__(self, owner: "BrokerClient", interval: float):
        self._owner = owner
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._stopping = False
        self._last_latency_ms: float | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self._loop(), name=f"broker-monitor-{self._owner.name}")

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while not self._stopping:
            await asyncio.sleep(self._interval)
            await self.ping_once()

    async def ping_once(self) -> bool:
        """
        Ping once and reconcile the state.

        STAGE-BROKER.4: Health ping
        """
        client = self._owner.raw_client
        try:
            if client is None:
                await self._owner.reconnect()
                return self._owner.is_ready
            started = time.perf_counter()
            await asyncio.wait_for(client.ping(), timeout=self._interval)
            self._last_latency_ms = round((time.perf_counter() - started) * 1000, 2)
            if not self._owner.is_ready:
                self._owner.state_machine.transition(BrokerState.READY, reason="ping ok")
            return True
        except (ConnectionError, TimeoutError, OSError, asyncio.TimeoutError, ReadOnlyError) as e:
            await self._owner.handle_connection_error(e)
            return False

    async def health_check(self) -> dict[str, Any]:
        healthy = await self.ping_once()
        return {
            "status": "healthy" if healthy else "unhealthy",
            "state": self._owner.state.value,
            "latency_ms": self._last_latency_ms if healthy else None,
        }


# =============================================================================
# PUBLIC API
# =============================================================================


class BrokerClient:
    """
    Single owning connection to the message broker.

    Contract:
    - connect(): idempotent; returns the same redis handle while healthy, or
      None when no broker is configured or reachable
    - duplicate(): new client with its own pool sharing URL/credentials/TLS
    - get/set/delete/flush: best-effort JSON helpers returning None/False
      instead of raising when the connection is not ready
    - commands: strict OperationExecutor raising BrokerError subclasses
    """

    def __init__(
        self,
        url: str | None = None,
        settings=None,
        name: str = "primary",
        max_retries_per_request: int | None = 3,
        keep_alive: bool = True,
        ready_check: bool = True,
        parent: "BrokerClient | None" = None,
    ):
        self._settings = settings or get_settings()
        self._url = url if url is not None or parent is not None else self._settings.broker_url()
        self.name = name
        self._ready_check = ready_check
        self._parent = parent
        self._children: list[BrokerClient] = []
        self.state_machine = ConnectionStateMachine(name)
        self._connection = (
            ConnectionManager(self._url, self._settings, max_retries_per_request, keep_alive)
            if self._url
            else None
        )
        self.commands = OperationExecutor(self)
        self._monitor = HealthMonitor(self, self._settings.broker.BROKER_HEALTH_CHECK_INTERVAL)
        self._reconnect_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BrokerState:
        return self.state_machine.state

    @property
    def is_ready(self) -> bool:
        return self.state == BrokerState.READY

    @property
    def is_configured(self) -> bool:
        return self._connection is not None

    @property
    def raw_client(self) -> redis.Redis | None:
        return self._connection.get_client() if self._connection else None

    def add_state_listener(self, listener: StateListener) -> None:
        self.state_machine.add_listener(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        self.state_machine.remove_listener(listener)

    async def wait_until_ready(self, timeout: float) -> bool:
        return await self.state_machine.wait_ready(timeout)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> redis.Redis | None:
        """
        Connect (idempotent) and start the health monitor.

        STAGE-BROKER.1: Connect

        Returns:
            The redis handle, or None when unconfigured or unreachable

        Raises:
            BrokerAuthenticationError: Credentials rejected (fatal)
        """
        if self._connection is None:
            logger.warning(
                "No broker URL configured, running without broker",
                stage="BROKER.1",
                connection=self.name,
            )
            return None

        if self.is_ready:
            return self.raw_client

        self.state_machine.transition(BrokerState.CONNECTING)
        try:
            client = await self._connection.connect(ready_check=self._ready_check)
        except AuthenticationError as e:
            self.state_machine.transition(BrokerState.ERROR, reason="authentication")
            raise BrokerAuthenticationError.from_exception(
                e, message="Broker rejected credentials", url=redact_url(self._url)
            )
        except (ConnectionError, TimeoutError, OSError) as e:
            self.state_machine.transition(BrokerState.ERROR, reason=str(e))
            logger.error(
                "Failed to connect to broker",
                stage="BROKER.1",
                connection=self.name,
                url=redact_url(self._url),
                error=str(e),
            )
            self._monitor.start()
            return None

        self.state_machine.transition(BrokerState.READY, reason="connected")
        self._monitor.start()
        logger.info(
            "Broker connected",
            stage="BROKER.1",
            connection=self.name,
            url=redact_url(self._url),
            max_retries_per_request=self._connection.max_retries,
        )
        return client

    async def reconnect(self) -> None:
        """Reset the pool and verify with PING."""
        if self._connection is None:
            return
        async with self._reconnect_lock:
            if self.is_ready:
                return
            self.state_machine.transition(BrokerState.RECONNECTING)
            try:
                await self._connection.reset()
                await self._connection.connect(ready_check=True)
            except (ConnectionError, TimeoutError, OSError) as e:
                logger.debug("Broker reconnect attempt failed", stage="BROKER.5", error=str(e))
                return
            self.state_machine.transition(BrokerState.READY, reason="reconnected")

    async def handle_connection_error(self, error: BaseException) -> None:
        """
        Record a transient connection failure.

        Moves the state to ERROR and propagates to duplicates; the health
        monitor reconnects in the background.
        """
        if self.state in (BrokerState.CLOSING, BrokerState.DISCONNECTED):
            return
        self.state_machine.transition(BrokerState.ERROR, reason=str(error))
        if isinstance(error, ReadOnlyError) and self._connection is not None:
            await self._connection.reset()
        for child in list(self._children):
            child.on_parent_state(BrokerState.ERROR, str(error))

    def on_parent_state(self, state: BrokerState, reason: str | None = None) -> None:
        """Mirror an error/close transition of the primary connection."""
        if state in (BrokerState.ERROR, BrokerState.CLOSING) and self.state == BrokerState.READY:
            self.state_machine.transition(BrokerState.ERROR, reason=f"parent {state.value}: {reason}")

    async def duplicate(
        self,
        name: str,
        keep_alive: bool = True,
        ready_check: bool = True,
        max_retries_per_request: int | None = None,
    ) -> "BrokerClient":
        """
        Create a consumer connection sharing URL, credentials and TLS.

        STAGE-BROKER.6: Duplicate

        Args:
            name: Connection name for logs
            keep_alive: TCP keep-alive on the duplicate's sockets
            ready_check: PING before reporting ready
            max_retries_per_request: None for unbounded retries (consumers)

        Returns:
            A connected (or connecting) BrokerClient
        """
        child = BrokerClient(
            url=self._url,
            settings=self._settings,
            name=name,
            max_retries_per_request=max_retries_per_request,
            keep_alive=keep_alive,
            ready_check=ready_check,
            parent=self,
        )
        self._children.append(child)
        await child.connect()
        return child

    async def disconnect(self) -> None:
        """
        Close this connection (and detach from the parent).

        STAGE-BROKER.3: Disconnect
        """
        self.state_machine.transition(BrokerState.CLOSING)
        for child in list(self._children):
            child.on_parent_state(BrokerState.CLOSING, "primary closing")
        await self._monitor.stop()
        if self._connection is not None:
            await self._connection.disconnect()
        if self._parent is not None and self in self._parent._children:
            self._parent._children.remove(self)
        self.state_machine.transition(BrokerState.DISCONNECTED)

    # -------------------------------------------------------------------------
    # Best-effort JSON helpers
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        """JSON GET; None when missing, not ready, or unavailable."""
        if not self.is_ready:
            return None
        try:
            raw = await self.commands.get(key)
        except BrokerError as e:
            logger.warning("Best-effort GET failed", stage="BROKER.GET", key=key, error=str(e))
            return None
        return orjson.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """JSON SET with optional TTL in seconds; False when not ready."""
        if not self.is_ready:
            return False
        try:
            return await self.commands.set(key, orjson.dumps(value).decode("utf-8"), ex=ttl)
        except BrokerError as e:
            logger.warning("Best-effort SET failed", stage="BROKER.SET", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        if not self.is_ready:
            return False
        try:
            return await self.commands.delete(key) > 0
        except BrokerError as e:
            logger.warning("Best-effort DEL failed", stage="BROKER.DEL", key=key, error=str(e))
            return False

    async def flush(self) -> bool:
        """FLUSHDB on the selected database."""
        if not self.is_ready:
            return False
        try:
            return await self.commands.flushdb()
        except BrokerError as e:
            logger.warning("Best-effort FLUSH failed", stage="BROKER.FLUSH", error=str(e))
            return False

    async def health_check(self) -> dict[str, Any]:
        if self._connection is None:
            return {"status": "disabled", "state": self.state.value, "latency_ms": None}
        return await self._monitor.health_check()


# =============================================================================
# GLOBAL INSTANCE (SINGLETON PATTERN)
# =============================================================================

_broker_client: BrokerClient | None = None


def get_broker_client() -> BrokerClient:
    """Get the process-wide primary broker client."""
    global _broker_client

    if _broker_client is None:
        _broker_client = BrokerClient()

    return _broker_client


async def init_broker() -> BrokerClient:
    """Create and connect the primary broker client."""
    client = get_broker_client()
    await client.connect()
    return client


async def close_broker() -> None:
    """Close the primary broker client."""
    global _broker_client

    if _broker_client:
        await _broker_client.disconnect()
        _broker_client = None
