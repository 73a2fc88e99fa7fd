"""
Mock task platform and secret relay for development and testing.

Security Note:
- In production, the key manager and oracle run inside a TEE and read
  their secrets from a relay that only TEEs can reach
- This mock runs the same applications in-process and resolves secret
  bindings from an in-memory relay, which simulates that behavior

What a task does here:
1. Resolve secret bindings to values (TEE-side relay access)
2. Run the application as an asyncio task
3. Keep its output record until the coordinator fetches it
"""

import asyncio
import logging
import secrets
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from enclave.key_manager import run_key_manager
from enclave.oracle import run_oracle
from enclave.providers import DEFAULT_TIMEOUT

from .enclave_types import (
    PushResult,
    SecretAlreadyExistsError,
    SecretRelayInterface,
    TaskHandle,
    TaskPlatformError,
    TaskPlatformInterface,
    TaskStatus,
)

logger = logging.getLogger(__name__)

AppRunner = Callable[[List[str], Dict[int, str]], Awaitable[dict]]

DEFAULT_RELAY_IDENTITY = "0x0000000000000000000000000000000000000000"
DEFAULT_MAX_TASKS = 1024


# =============================================================================
# Secret Relay
# =============================================================================


class InMemorySecretRelay(SecretRelayInterface):
    """Write-once secret store keyed by (owner, name)."""

    def __init__(self, identity: str = DEFAULT_RELAY_IDENTITY):
        self._identity = identity
        self._secrets: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    @property
    def identity(self) -> str:
        return self._identity

    async def push(self, name: str, value: str) -> PushResult:
        key = (self._identity.lower(), name)
        async with self._lock:
            if key in self._secrets:
                raise SecretAlreadyExistsError(f"Secret {name} already exists for {self._identity}")
            self._secrets[key] = value
        logger.debug(f"Pushed secret {name} ({len(value)} chars)")
        return PushResult(pushed=True, name=name, owner=self._identity)

    async def exists(self, owner: str, name: str) -> bool:
        return (owner.lower(), name) in self._secrets

    def read_from_tee(self, owner: str, name: str) -> Optional[str]:
        """
        Read a secret value.

        Only the in-process platform calls this, standing in for the TEE.
        Coordinator code must never read secret values.
        """
        return self._secrets.get((owner.lower(), name))


# =============================================================================
# Task Platform
# =============================================================================


def default_apps(
    key_manager_app: str = "key-manager",
    oracle_app: str = "oracle",
    provider_mode: str = "simulated",
    custom_endpoint: str = "",
    timeout: float = DEFAULT_TIMEOUT,
) -> Dict[str, AppRunner]:
    """Application registry backed by the real TEE application code."""

    async def key_manager(args: List[str], bound: Dict[int, str]) -> dict:
        return run_key_manager(args, bound)

    async def oracle(args: List[str], bound: Dict[int, str]) -> dict:
        return await run_oracle(
            args,
            bound,
            provider_mode=provider_mode,
            custom_endpoint=custom_endpoint,
            timeout=timeout,
        )

    return {key_manager_app: key_manager, oracle_app: oracle}


class MockTaskPlatform(TaskPlatformInterface):
    """
    In-process task platform.

    Tasks run as asyncio tasks on the current loop. An application that
    raises (instead of returning a record) is reported as FAILED, like a
    crashed enclave.

    Development and tests only. Finished tasks are kept for later status and
    result reads until more than `max_tasks` are tracked; the oldest finished
    ones are then forgotten and report UNKNOWN.
    """

    def __init__(
        self,
        relay: InMemorySecretRelay,
        apps: Optional[Mapping[str, AppRunner]] = None,
        execution_delay: float = 0.0,
        max_tasks: int = DEFAULT_MAX_TASKS,
    ):
        """
        Args:
            relay: Relay the tasks read their secret bindings from
            apps: Application registry (default: key manager + oracle)
            execution_delay: Seconds each task waits before running
            max_tasks: Number of tasks tracked before finished ones are evicted
        """
        self._relay = relay
        self._apps = dict(apps) if apps is not None else default_apps()
        self._execution_delay = execution_delay
        self._max_tasks = max_tasks
        self._tasks: Dict[str, asyncio.Task] = {}
        self.dispatched: List[Tuple[str, List[str], Dict[int, str]]] = []

    async def dispatch(self, app: str, args: Sequence[str], secret_bindings: Dict[int, str]) -> TaskHandle:
        runner = self._apps.get(app)
        if runner is None:
            raise TaskPlatformError(f"Unknown app: {app}")

        bound: Dict[int, str] = {}
        for index, name in secret_bindings.items():
            value = self._relay.read_from_tee(self._relay.identity, name)
            if value is None:
                raise TaskPlatformError(f"Secret {name} is not available to the TEE")
            bound[index] = value

        task_id = "0x" + secrets.token_hex(32)
        deal_id = "0x" + secrets.token_hex(32)
        self._tasks[task_id] = asyncio.create_task(self._execute(runner, list(args), bound))
        self.dispatched.append((app, list(args), dict(secret_bindings)))
        self._evict_finished()

        logger.info(f"Dispatched {app} as task {task_id[:18]}...")
        return TaskHandle(task_id=task_id, deal_id=deal_id)

    def _evict_finished(self) -> None:
        # dicts keep insertion order, so this walks oldest first
        for task_id in [t for t, task in self._tasks.items() if task.done()]:
            if len(self._tasks) <= self._max_tasks:
                break
            task = self._tasks.pop(task_id)
            if not task.cancelled():
                task.exception()

    async def _execute(self, runner: AppRunner, args: List[str], bound: Dict[int, str]) -> dict:
        if self._execution_delay:
            await asyncio.sleep(self._execution_delay)
        return await runner(args, bound)

    async def get_status(self, task_id: str) -> TaskStatus:
        task = self._tasks.get(task_id)
        if task is None:
            return TaskStatus.UNKNOWN
        if not task.done():
            return TaskStatus.ACTIVE
        if task.cancelled() or task.exception() is not None:
            return TaskStatus.FAILED
        return TaskStatus.COMPLETED

    async def fetch_result(self, task_id: str) -> dict:
        status = await self.get_status(task_id)
        if status != TaskStatus.COMPLETED:
            raise TaskPlatformError(f"Task {task_id} has no result (status {status.value})")
        return dict(self._tasks[task_id].result())

    async def close(self) -> None:
        """Cancel tasks that are still running."""
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)


__all__ = [
    "InMemorySecretRelay",
    "MockTaskPlatform",
    "default_apps",
]
