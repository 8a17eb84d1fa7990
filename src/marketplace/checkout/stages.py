"""Stage runner — bounds every external call of a workflow with a timeout.

Each stage runs on a worker thread inside the domain's context, and the
caller waits at most ``timeout`` seconds for it. A timeout surfaces as
``StageTimeout`` (UPSTREAM_FAILURE, retryable by the user), never as a
silent success. Marketplace errors raised inside a stage keep their kind
and gain the stage name, protean errors are translated first, and anything
else is reported as an upstream failure of that stage.
"""

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import TypeVar

import structlog
from protean.domain import Domain

from marketplace.errors import MarketplaceError, StageTimeout, UpstreamFailure, from_protean

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StageRunner:
    def __init__(self, domain: Domain, timeout: float = 10.0, max_workers: int = 8) -> None:
        self.domain = domain
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="stage")

    def _in_context(self, fn: Callable[..., T], *args, **kwargs) -> T:
        with self.domain.domain_context():
            return fn(*args, **kwargs)

    def run(self, stage: str, fn: Callable[..., T], *args, timeout: float | None = None, **kwargs) -> T:
        limit = timeout if timeout is not None else self.timeout
        future = self._executor.submit(self._in_context, fn, *args, **kwargs)
        try:
            return future.result(timeout=limit)
        except FutureTimeout:
            future.cancel()
            logger.warning("Stage timed out", stage=stage, timeout=limit)
            raise StageTimeout(stage, limit) from None
        except MarketplaceError as exc:
            raise exc.at_stage(stage)
        except Exception as exc:
            translated = from_protean(exc)
            if translated is not None:
                raise translated.at_stage(stage) from exc
            logger.error("Stage failed", stage=stage, error=str(exc), error_type=type(exc).__name__)
            raise UpstreamFailure(
                f"A required service failed ({stage}). Please try again.",
                code="UPSTREAM_FAILURE",
                stage=stage,
            ) from exc

    def attempt(self, stage: str, fn: Callable[..., T], *args, **kwargs) -> T | None:
        """Run a best-effort stage: a failure is logged and ``None`` returned."""
        try:
            return self.run(stage, fn, *args, **kwargs)
        except MarketplaceError as exc:
            logger.warning("Best-effort stage failed", stage=stage, code=exc.code, error=exc.message)
            return None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
