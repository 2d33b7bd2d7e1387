import argparse
import json
import logging
import sys

from core.config_loader import load_config
from core.utils import utcnow
from database.database import build_engine, init_db
from notification.catalog import load_catalog
from notification.dispatcher import NotificationDispatcher
from notification.dto import NotificationEvent
from notification.exceptions import NotificationError
from notification.reconciliation import DeviceReconciliationJob

logger = logging.getLogger(__name__)


def _parse_params(pairs):
    """k=v pairs -> dict; integer-looking values become ints."""
    params = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ValueError(f"Expected key=value, got {pair!r}")
        key, value = pair.split('=', 1)
        params[key] = int(value) if value.lstrip('-').isdigit() else value
    return params


def cmd_catalog(args, config):
    catalog = load_catalog(config.notifications.catalog_path)
    for entry in catalog.entries():
        state = "active" if entry.is_active else "disabled"
        print(
            f"{entry.notification_key:<20} {state:<9} {entry.audience.value:<30} "
            f"scope={entry.dedupe.scope.value} ttl={entry.dedupe.ttl_seconds}s "
            f"cooldown={entry.cooldown.per_user_seconds}s rollout={entry.rollout.percentage}%"
        )
    return 0


def cmd_dispatch(args, config):
    dispatcher = NotificationDispatcher.from_config(config)
    event = NotificationEvent(
        notification_key=args.notification_key,
        params=_parse_params(args.param),
        occurred_at=utcnow(),
        actor_user_id=args.actor,
        title=args.title,
        body=args.body,
        skip_preference_check=args.skip_preference_check,
        skip_cooldown_check=args.skip_cooldown_check,
    )
    report = dispatcher.dispatch(event)
    print(json.dumps({
        'notification_key': report.notification_key,
        'event_id': report.event_id,
        'skipped_reason': report.skipped_reason,
        'candidates': report.total_candidates,
        'selected': report.selected_candidates,
        'counts': {k: v for k, v in report.counts.items() if v},
        'errors': report.errors,
    }, indent=2, default=str))
    return 0


def cmd_reconcile(args, config):
    job = DeviceReconciliationJob.from_config(config)
    print(json.dumps(job.run(), indent=2))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Push notification dispatch engine")
    parser.add_argument('--config', type=str, default='config.yaml', help='Path to config.yaml')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable DEBUG logging')
    parser.add_argument('--init-db', action='store_true', help='Create missing engine tables first')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('catalog', help='List catalog entries')

    dispatch = sub.add_parser('dispatch', help='Dispatch one event (admin broadcast / replay)')
    dispatch.add_argument('notification_key')
    dispatch.add_argument('--param', '-p', action='append', help='Event parameter as key=value (repeatable)')
    dispatch.add_argument('--actor', help='User id of the sender/joiner')
    dispatch.add_argument('--title')
    dispatch.add_argument('--body')
    dispatch.add_argument('--skip-preference-check', action='store_true')
    dispatch.add_argument('--skip-cooldown-check', action='store_true')

    sub.add_parser('reconcile', help='Re-verify all devices against the push provider')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = load_config(args.config)
    if args.init_db:
        init_db(build_engine(config.database.url))

    commands = {
        'catalog': cmd_catalog,
        'dispatch': cmd_dispatch,
        'reconcile': cmd_reconcile,
    }
    try:
        return commands[args.command](args, config)
    except (NotificationError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
