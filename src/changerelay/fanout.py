"""
Concurrency fan-out executor

Runs one operation per tenant on a bounded pool. Each task is isolated: an
exception inside the operation becomes that tenant's failure result and never
disturbs its siblings. Results are collected in completion order.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from changerelay.models import Summary, TenantOperationResult

logger = logging.getLogger(__name__)

TenantOp = Callable[[str], Union[Any, Awaitable[Any]]]


class TenantSkipped(Exception):
    """Raised by a per-tenant operation that had nothing to do"""


def effective_concurrency(max_concurrency: int, count: int) -> int:
    """0, negative, or anything >= count means one worker per tenant"""
    if count == 0:
        return 0
    if max_concurrency <= 0 or max_concurrency >= count:
        return count
    return max_concurrency


class FanOutExecutor:
    """Bounded-parallel multi-tenant operation runner"""

    def __init__(self, default_concurrency: int = 0):
        self.default_concurrency = default_concurrency

    async def run(
        self,
        tenant_ids: Iterable[str],
        op: TenantOp,
        max_concurrency: Optional[int] = None,
        tenant_names: Optional[Dict[str, str]] = None,
    ) -> Summary:
        """Run op for every tenant and aggregate the outcome.

        ``op`` may be a coroutine function or a plain callable; plain callables
        run in a worker thread. There is no mid-run cancellation, so an op that
        needs a hard cutoff must enforce its own timeout.
        """
        tenants = list(dict.fromkeys(tenant_ids))
        if max_concurrency is None:
            max_concurrency = self.default_concurrency
        workers = effective_concurrency(max_concurrency, len(tenants))
        names = tenant_names or {}

        started = time.monotonic()
        if not tenants:
            return Summary.aggregate([], 0.0)

        logger.info(f"Fan-out over {len(tenants)} tenants with {workers} workers")
        semaphore = asyncio.Semaphore(workers)
        results: List[TenantOperationResult] = []

        async def run_one(tenant_id: str) -> None:
            async with semaphore:
                result = await self._invoke(op, tenant_id)
            result.tenant_name = names.get(tenant_id)
            results.append(result)

        await asyncio.gather(*(run_one(tenant_id) for tenant_id in tenants))

        summary = Summary.aggregate(results, time.monotonic() - started)
        logger.info(
            f"Fan-out complete: {summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.skipped} skipped in {summary.wall_clock:.2f}s"
        )
        return summary

    @staticmethod
    async def _invoke(op: TenantOp, tenant_id: str) -> TenantOperationResult:
        started = time.monotonic()
        try:
            if inspect.iscoroutinefunction(op):
                value = await op(tenant_id)
            else:
                value = await asyncio.to_thread(op, tenant_id)
                if inspect.isawaitable(value):
                    value = await value
        except TenantSkipped as e:
            logger.info(f"Tenant {tenant_id} skipped: {e}")
            return TenantOperationResult(
                tenant_id=tenant_id, success=False, skipped=True,
                error=str(e) or None, duration=time.monotonic() - started,
            )
        except Exception as e:
            logger.error(f"Tenant {tenant_id} failed: {type(e).__name__}: {e}")
            return TenantOperationResult(
                tenant_id=tenant_id, success=False,
                error=f"{type(e).__name__}: {e}", duration=time.monotonic() - started,
            )
        return TenantOperationResult(
            tenant_id=tenant_id, success=True, value=value, duration=time.monotonic() - started,
        )
