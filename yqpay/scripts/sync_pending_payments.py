"""Reconcile open payment transactions against their gateways.

Meant for cron:
    yqpay-sync-pending              # every theater with a configured gateway
    yqpay-sync-pending <theaterId>  # one theater

Exits 0 when the sweep completed (individual transaction errors are
reported, not fatal) and 1 on a fatal error or an unknown theater.
"""
import argparse
import asyncio
import logging
import sys

from yqpay.core.errors import PaymentError
from yqpay.core.logging_config import configure_logging
from yqpay.database import models, payment_models  # noqa: F401
from yqpay.database.database import Base, SessionLocal, engine
from yqpay.services import reconciler

logger = logging.getLogger("yqpay.sync_pending")


def _parse_args(argv):
    parser = argparse.ArgumentParser(prog="yqpay-sync-pending", description=__doc__.splitlines()[0])
    parser.add_argument("theater_id", nargs="?", help="limit the sweep to one theater")
    parser.add_argument("--min-age", type=int, default=None, help="only transactions older than this many seconds")
    return parser.parse_args(argv)


async def _run(theater_id, min_age):
    db = SessionLocal()
    try:
        if theater_id:
            return await reconciler.sync_pending(db, theater_id, min_age_seconds=min_age)
        return await reconciler.sync_all_theaters(db, min_age_seconds=min_age)
    finally:
        db.close()


def main(argv=None) -> int:
    configure_logging()
    args = _parse_args(argv)
    Base.metadata.create_all(bind=engine)
    try:
        summary = asyncio.run(_run(args.theater_id, args.min_age))
    except PaymentError as e:
        logger.error("Sync aborted: %s", e.message)
        return 1
    except Exception:
        logger.exception("Sync aborted")
        return 1

    print(
        f"Sync complete: total={summary['total']} synced={summary['synced']} "
        f"failed={summary['failed']} upToDate={summary['alreadyUpToDate']} errors={len(summary['errors'])}"
    )
    for err in summary["errors"]:
        print(f"  {err.get('theaterId', args.theater_id)}/{err['transactionId']}: {err['error']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
