"""
Task platform package for confidential execution.

This package provides platform implementations:
- MockTaskPlatform + InMemorySecretRelay: In-process for development (TASK_PLATFORM_MODE=mock)
- RemoteTaskPlatform + RemoteSecretRelay: HTTP gateways (TASK_PLATFORM_MODE=remote)
"""

import logging
from typing import Union

from .enclave_types import (
    PushResult,
    SecretAlreadyExistsError,
    SecretRelayError,
    SecretRelayInterface,
    TaskFailedError,
    TaskHandle,
    TaskPlatformError,
    TaskPlatformInterface,
    TaskStatus,
    TaskTimeoutError,
    push_unique_secret,
)
from .mock_enclave import InMemorySecretRelay, MockTaskPlatform, default_apps

logger = logging.getLogger(__name__)

# Singleton instances
_platform_instance: Union[TaskPlatformInterface, None] = None
_relay_instance: Union[SecretRelayInterface, None] = None


def get_secret_relay() -> SecretRelayInterface:
    """
    Get the secret relay based on TASK_PLATFORM_MODE config.

    Returns:
        SecretRelayInterface implementation
    """
    global _relay_instance

    if _relay_instance is None:
        from core.config import settings

        if settings.TASK_PLATFORM_MODE == "remote":
            from .remote_platform import RemoteSecretRelay

            _relay_instance = RemoteSecretRelay(
                relay_url=settings.SECRET_RELAY_URL,
                identity=settings.RELAY_IDENTITY,
                token=settings.SECRET_RELAY_TOKEN,
            )
            logger.info(f"Using RemoteSecretRelay ({settings.SECRET_RELAY_URL})")
        else:
            _relay_instance = InMemorySecretRelay(identity=settings.RELAY_IDENTITY)
            logger.info("Using InMemorySecretRelay (development mode)")

    return _relay_instance


def get_task_platform() -> TaskPlatformInterface:
    """
    Get the task platform based on TASK_PLATFORM_MODE config.

    - TASK_PLATFORM_MODE=mock: MockTaskPlatform running the TEE apps in-process
    - TASK_PLATFORM_MODE=remote: RemoteTaskPlatform over HTTP

    Returns:
        TaskPlatformInterface implementation
    """
    global _platform_instance

    if _platform_instance is None:
        from core.config import settings

        if settings.TASK_PLATFORM_MODE == "remote":
            from .remote_platform import RemoteTaskPlatform

            _platform_instance = RemoteTaskPlatform(
                gateway_url=settings.TASK_GATEWAY_URL,
                result_gateway_url=settings.RESULT_GATEWAY_URL,
                workerpool=settings.WORKERPOOL,
            )
            logger.info(f"Using RemoteTaskPlatform ({settings.TASK_GATEWAY_URL})")
        else:
            relay = get_secret_relay()
            if not isinstance(relay, InMemorySecretRelay):
                raise TaskPlatformError("Mock task platform requires the in-memory secret relay")
            _platform_instance = MockTaskPlatform(
                relay=relay,
                apps=default_apps(
                    key_manager_app=settings.KEY_MANAGER_APP,
                    oracle_app=settings.ORACLE_APP,
                    provider_mode=settings.PROVIDER_MODE,
                    custom_endpoint=settings.CUSTOM_PROVIDER_URL,
                    timeout=settings.PROVIDER_REQUEST_TIMEOUT,
                ),
            )
            logger.info(f"Using MockTaskPlatform (providers: {settings.PROVIDER_MODE})")

    return _platform_instance


def reset_enclave() -> None:
    """
    Reset the platform and relay singletons (for testing only).

    This forces new instances to be created on the next get_* call.
    """
    global _platform_instance, _relay_instance
    _platform_instance = None
    _relay_instance = None


async def shutdown_enclave() -> None:
    """Close platform and relay clients on application shutdown."""
    global _platform_instance, _relay_instance

    for instance in (_platform_instance, _relay_instance):
        close = getattr(instance, "close", None)
        if close is not None:
            await close()

    _platform_instance = None
    _relay_instance = None


__all__ = [
    "PushResult",
    "SecretAlreadyExistsError",
    "SecretRelayError",
    "SecretRelayInterface",
    "TaskFailedError",
    "TaskHandle",
    "TaskPlatformError",
    "TaskPlatformInterface",
    "TaskStatus",
    "TaskTimeoutError",
    "push_unique_secret",
    "InMemorySecretRelay",
    "MockTaskPlatform",
    "default_apps",
    "get_secret_relay",
    "get_task_platform",
    "reset_enclave",
    "shutdown_enclave",
]
