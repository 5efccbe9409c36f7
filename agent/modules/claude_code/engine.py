"""Thread offloading and error translation for Docker SDK calls."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

import docker
import requests
import structlog

from modules.claude_code.errors import EngineError, EngineUnavailable, NotFound

logger = structlog.get_logger()

T = TypeVar("T")


def _explain(error: docker.errors.APIError) -> str:
    return str(getattr(error, "explanation", None) or error)


async def engine_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking docker SDK call in a worker thread.

    Raises:
        NotFound: The container, volume or image does not exist
        EngineError: The daemon answered with an error
        EngineUnavailable: The daemon could not be reached
    """
    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except docker.errors.NotFound as e:
        raise NotFound(_explain(e)) from e
    except docker.errors.APIError as e:
        raise EngineError(_explain(e), status_code=e.status_code) from e
    except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
        raise EngineUnavailable(str(e)) from e


def connect() -> docker.DockerClient:
    """Connect to the local Docker daemon from the environment."""
    try:
        client = docker.from_env()
    except docker.errors.DockerException as e:
        logger.error("docker_connect_failed", error=str(e))
        raise EngineUnavailable(str(e)) from e
    logger.info("docker_client_initialized")
    return client
