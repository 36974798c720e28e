"""Expiry sweeper - cleans up labs whose time is up or that failed long ago.

Every ``sweep_interval`` seconds:
1. Labs whose ends_at has passed are cleaned up and marked expired.
2. Labs stuck in error longer than ``error_lab_threshold`` are cleaned up
   and deleted.

Both sweeps are best-effort: a failure on one lab is logged and the sweep
moves on to the next.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from labby.lifecycle import LabService
from labby.logging_config import set_lab_id
from labby.schemas import LabStatus
from labby.utils import utcnow

logger = logging.getLogger(__name__)


async def sweep_expired_labs(lab_service: LabService) -> int:
    """Expire every lab past its end time; returns how many were expired."""
    try:
        labs = lab_service.repository.get_expired_labs()
    except SQLAlchemyError as e:
        logger.error(f"Failed to query expired labs: {e}")
        return 0

    if labs:
        logger.info(f"Found {len(labs)} expired lab(s)")

    expired = 0
    for lab in labs:
        set_lab_id(lab.id)
        try:
            await lab_service.expire_lab(lab.id)
            expired += 1
        except Exception as e:
            logger.error(f"Failed to expire lab {lab.id}: {e}")
        finally:
            set_lab_id(None)
    return expired


async def sweep_failed_labs(lab_service: LabService) -> int:
    """Delete labs that have been in error past the threshold; returns the count."""
    cutoff = utcnow() - timedelta(seconds=lab_service.settings.error_lab_threshold)
    try:
        labs = lab_service.repository.get_labs_by_status(LabStatus.ERROR)
    except SQLAlchemyError as e:
        logger.error(f"Failed to query failed labs: {e}")
        return 0

    deleted = 0
    for lab in labs:
        stamp = lab.updated_at or lab.created_at
        if stamp is None or stamp >= cutoff:
            continue
        set_lab_id(lab.id)
        try:
            logger.info(f"Deleting lab {lab.id}, in error since {stamp.isoformat()}")
            await lab_service.delete_lab(lab.id)
            deleted += 1
        except Exception as e:
            logger.error(f"Failed to delete failed lab {lab.id}: {e}")
        finally:
            set_lab_id(None)
    return deleted


async def run_sweep(lab_service: LabService) -> None:
    expired = await sweep_expired_labs(lab_service)
    deleted = await sweep_failed_labs(lab_service)
    if expired or deleted:
        logger.info(f"Sweep complete: {expired} expired, {deleted} failed lab(s) deleted")


async def expiry_sweep_monitor(lab_service: LabService) -> None:
    """Background task running the sweeps every ``sweep_interval`` seconds."""
    interval = lab_service.settings.sweep_interval
    logger.info(
        f"Expiry sweeper started "
        f"(interval: {interval}s, error threshold: {lab_service.settings.error_lab_threshold}s)"
    )

    while True:
        try:
            await asyncio.sleep(interval)
            await run_sweep(lab_service)
        except asyncio.CancelledError:
            logger.info("Expiry sweeper stopped")
            break
        except Exception as e:
            logger.error(f"Error in expiry sweeper: {e}")
