"""
Shared types and interfaces for the confidential task platform.

The coordinator never runs TEE code itself. It pushes secrets to the relay,
dispatches an application with secret bindings, and waits for the output
record. These interfaces are implemented by MockTaskPlatform (in-process,
development) and RemoteTaskPlatform (production).
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Sequence

logger = logging.getLogger(__name__)


# =============================================================================
# Errors
# =============================================================================


class TaskPlatformError(Exception):
    """Base exception for task platform errors."""

    pass


class TaskTimeoutError(TaskPlatformError):
    """Raised when waiting for a task exceeds its timeout. The task may still finish."""

    pass


class TaskFailedError(TaskPlatformError):
    """Raised when the platform reports a task as failed."""

    pass


class SecretRelayError(Exception):
    """Base exception for secret relay errors."""

    pass


class SecretAlreadyExistsError(SecretRelayError):
    """Raised when a secret name is already bound for this identity."""

    pass


# =============================================================================
# Data Structures
# =============================================================================


class TaskStatus(str, Enum):
    """Task lifecycle as reported by the platform."""

    UNSET = "UNSET"
    ACTIVE = "ACTIVE"
    REVEALING = "REVEALING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_code(cls, code: int) -> "TaskStatus":
        """Map the platform's numeric status code."""
        return {
            0: cls.UNSET,
            1: cls.ACTIVE,
            2: cls.REVEALING,
            3: cls.COMPLETED,
            4: cls.FAILED,
        }.get(code, cls.UNKNOWN)


@dataclass(frozen=True)
class TaskHandle:
    """Reference to a dispatched task."""

    task_id: str
    deal_id: Optional[str] = None


@dataclass(frozen=True)
class PushResult:
    """Result of pushing a secret to the relay."""

    pushed: bool
    name: str
    owner: str


# =============================================================================
# Interfaces
# =============================================================================


class TaskPlatformInterface(ABC):
    """
    Abstract interface for the confidential compute platform.

    Secret bindings map positional indices to relay names; inside the TEE
    the value bound at index n is exposed as IEXEC_REQUESTER_SECRET_<n>.
    """

    @abstractmethod
    async def dispatch(
        self,
        app: str,
        args: Sequence[str],
        secret_bindings: Dict[int, str],
    ) -> TaskHandle:
        """
        Start an application inside a TEE.

        Args:
            app: Application identifier
            args: Ordinary, non-secret arguments
            secret_bindings: {index: relay secret name}

        Returns:
            TaskHandle for polling
        """
        pass

    @abstractmethod
    async def get_status(self, task_id: str) -> TaskStatus:
        """Current status of a task."""
        pass

    @abstractmethod
    async def fetch_result(self, task_id: str) -> dict:
        """
        Fetch the output record of a completed task.

        Raises:
            TaskPlatformError: If the task has no result yet or it cannot be read
        """
        pass

    async def await_result(
        self,
        task_id: str,
        timeout: float,
        poll_interval: float = 5.0,
    ) -> dict:
        """
        Poll until the task completes and return its output record.

        Raises:
            TaskTimeoutError: If the task is still running after `timeout` seconds
            TaskFailedError: If the platform reports the task failed
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            status = await self.get_status(task_id)
            if status == TaskStatus.COMPLETED:
                return await self.fetch_result(task_id)
            if status == TaskStatus.FAILED:
                raise TaskFailedError(f"Task {task_id} failed")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TaskTimeoutError(f"Task {task_id} timed out after {timeout:.0f}s")
            await asyncio.sleep(min(poll_interval, remaining))


class SecretRelayInterface(ABC):
    """
    Abstract interface for the TEE-only secret store.

    Values are opaque strings and immutable once pushed.
    """

    @property
    @abstractmethod
    def identity(self) -> str:
        """Address that owns secrets pushed through this relay."""
        pass

    @abstractmethod
    async def push(self, name: str, value: str) -> PushResult:
        """
        Bind `value` to `name` for this identity.

        Raises:
            SecretAlreadyExistsError: If `name` is already bound
        """
        pass

    @abstractmethod
    async def exists(self, owner: str, name: str) -> bool:
        """Whether `name` is bound for `owner`."""
        pass


async def push_unique_secret(
    relay: SecretRelayInterface,
    base_name: str,
    value: str,
    max_attempts: int = 5,
) -> str:
    """
    Push a secret without ever clobbering an existing binding.

    On a name collision the push is retried under a disambiguated name.

    Returns:
        The name the value was actually bound to

    Raises:
        SecretAlreadyExistsError: If every attempted name was taken
        SecretRelayError: If the relay refused the push
    """
    name = base_name
    for _ in range(max_attempts):
        try:
            result = await relay.push(name, value)
        except SecretAlreadyExistsError:
            logger.warning(f"Secret {name} already exists, disambiguating")
            name = f"{base_name}-{secrets.token_hex(4)}"
            continue

        if not result.pushed:
            raise SecretRelayError(f"Relay refused secret {name}")
        return result.name

    raise SecretAlreadyExistsError(f"Could not find a free name for secret {base_name}")


__all__ = [
    "TaskPlatformError",
    "TaskTimeoutError",
    "TaskFailedError",
    "SecretRelayError",
    "SecretAlreadyExistsError",
    "TaskStatus",
    "TaskHandle",
    "PushResult",
    "TaskPlatformInterface",
    "SecretRelayInterface",
    "push_unique_secret",
]
