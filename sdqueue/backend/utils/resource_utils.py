"""Resource release utilities."""

from __future__ import annotations

import atexit
import gc
import threading
from typing import Callable, Optional

from sdqueue.backend.services.model_guard import LoadedModelGuard
from sdqueue.backend.services.queue_manager import QueueManager
from sdqueue.backend.utils.exceptions import ModelLoadError
from sdqueue.backend.utils.logging_utils import logger

_shutdown_lock = threading.Lock()
_shutdown_done = False


def release_resources(
    model_guard: Optional[LoadedModelGuard] = None,
    log: Callable[[str], None] = lambda s: None,
) -> None:
    """Unload the resident model and up-scaler, then collect garbage."""
    log("[CLEANUP] Releasing resources...")
    logger.info("Starting resource release")

    if model_guard is not None:
        loaded = model_guard.loaded_model
        try:
            model_guard.unload()
            if loaded is not None:
                log(f"[CLEANUP] Unloaded model {loaded.name}")
                logger.info("Model memory released: %s", loaded.name)
        except ModelLoadError as exc:
            log(f"[CLEANUP] Model unload failed: {exc}")
            logger.error("Error during model unload: %s", exc)

    try:
        collected = gc.collect()
        logger.info("Python gc collected %s objects", collected)
    except Exception as exc:
        logger.error("Error during gc.collect(): %s", exc)

    log("[CLEANUP] Resource release complete")
    logger.info("Resource release completed")


def full_shutdown_cleanup(queue_manager: Optional[QueueManager], model_guard: Optional[LoadedModelGuard]) -> None:
    """Drain the worker and release the engine. Runs at most once per process.

    Blocks until the running job, if any, has finished.
    """
    global _shutdown_done
    with _shutdown_lock:
        if _shutdown_done:
            return
        _shutdown_done = True

    logger.info("Performing full shutdown cleanup")
    if queue_manager is not None:
        try:
            queue_manager.stop()
        except Exception as exc:
            logger.error("Error stopping queue worker: %s", exc)

    release_resources(model_guard)
    logger.info("Full shutdown cleanup completed")


def abort_shutdown(queue_manager: Optional[QueueManager]) -> None:
    """Second shutdown request: cancel the running job without waiting for it."""
    if queue_manager is None:
        return
    logger.warning("Forced shutdown requested")
    queue_manager.abort()


def register_shutdown(queue_manager: Optional[QueueManager], model_guard: Optional[LoadedModelGuard]) -> None:
    """Make sure the cleanup also runs when the interpreter exits."""
    atexit.register(full_shutdown_cleanup, queue_manager, model_guard)


def reset_shutdown_state() -> None:
    global _shutdown_done
    with _shutdown_lock:
        _shutdown_done = False
