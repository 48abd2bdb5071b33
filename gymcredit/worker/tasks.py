"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from gymcredit.core.config import get_settings
from gymcredit.core.logging import configure_logging, get_logger
from gymcredit.services import passes as passes_service

log = get_logger(__name__)


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(get_settings().redis_url)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    gym_id: str | None,
    job_try: int,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from gymcredit.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            gym_id=gym_id,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
            retries=max(job_try - 1, 0),
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, gym_id=gym_id, job_try=job_try)
        raise


async def expire_passes(ctx: dict[str, Any], gym_id: str | None = None) -> int:
    """Sweep ACTIVE passes past their expiry into EXPIRED (all gyms unless gym_id given)."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None

    async def _run() -> int:
        log.info("job_start", job="expire_passes", gym_id=gym_id)
        count = await passes_service.expire_overdue(gym_id=gym_id)
        log.info("job_done", job="expire_passes", gym_id=gym_id, expired=count)
        return count

    return await _run_with_dlq("expire_passes", job_id, gym_id, ctx.get("job_try", 1), [gym_id], {}, _run())


async def startup(ctx: dict) -> None:
    from gymcredit.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass
