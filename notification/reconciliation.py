"""
Device Reconciliation Job

Re-verifies every locally mirrored device against the push provider and
repairs the mirror. Batches run one after another so at most one batch of
provider calls is outstanding; calls inside a batch run concurrently.

An external user id that disagrees with the local owner is flagged on the
row and reported. It is never rewritten here: a mismatch means a device was
registered to the wrong account and needs a human to look at it.

Usage:
    python main.py reconcile
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from core.config_loader import AppConfig
from core.utils import mask_identifier, utcnow
from database.database import build_session_factory, db_session_scope
from database.models import SubscriptionState
from database.repositories import DeviceRepository
from notification.exceptions import ProviderError
from notification.provider import DeviceState, PushProvider, build_provider

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    total: int = 0
    subscribed: int = 0
    unsubscribed: int = 0
    pending: int = 0
    invalid: int = 0
    mismatched: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        # Pending devices are tentatively eligible, so they count as subscribed
        return {
            'ok': True,
            'total_player_ids': self.total,
            'subscribed': self.subscribed + self.pending,
            'unsubscribed': self.unsubscribed,
        }


class DeviceReconciliationJob:
    def __init__(
        self,
        session_factory: sessionmaker,
        provider: PushProvider,
        batch_size: int = 200,
        max_workers: int = 10,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.clock = clock

    @classmethod
    def from_config(cls, config: AppConfig, provider: Optional[PushProvider] = None) -> "DeviceReconciliationJob":
        return cls(
            session_factory=build_session_factory(config.database.url),
            provider=provider or build_provider(config.notifications.provider),
            batch_size=config.reconciliation.batch_size,
            max_workers=config.reconciliation.max_workers,
        )

    def run(self) -> Dict[str, Any]:
        """Reconcile every registered device. Takes no input; safe to run from cron."""
        with db_session_scope(self.session_factory) as session:
            device_ids = DeviceRepository(session).list_all_device_ids()
        report = self.reconcile(device_ids)
        return report.as_dict()

    def reconcile(self, device_ids: List[str]) -> ReconciliationReport:
        report = ReconciliationReport(total=len(device_ids))
        batches = [device_ids[i:i + self.batch_size] for i in range(0, len(device_ids), self.batch_size)]
        logger.info(f"Reconciling {len(device_ids)} device(s) in {len(batches)} batch(es)")

        for index, batch in enumerate(batches, start=1):
            self._reconcile_batch(batch, report)
            logger.info(f"Batch {index}/{len(batches)} done ({len(batch)} device(s))")

        logger.info(
            f"Reconciliation complete: subscribed={report.subscribed}, pending={report.pending}, "
            f"unsubscribed={report.unsubscribed}, invalid={report.invalid}, "
            f"mismatched={len(report.mismatched)}, errors={len(report.errors)}"
        )
        return report

    def _fetch(self, device_id: str):
        try:
            return device_id, self.provider.get_device_state(device_id), None
        except ProviderError as e:
            return device_id, None, {**e.detail, 'message': str(e)}
        except Exception as e:
            # One unreadable device never aborts the batch
            logger.exception(f"Unexpected error checking device {mask_identifier(device_id)}")
            return device_id, None, {'type': type(e).__name__, 'message': str(e)}

    def _reconcile_batch(self, batch: List[str], report: ReconciliationReport) -> None:
        workers = max(1, min(self.max_workers, len(batch)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(self._fetch, batch))

        now = self.clock()
        with db_session_scope(self.session_factory) as session:
            repo = DeviceRepository(session)
            devices = repo.get_by_device_ids(batch)
            for device_id, state, error in results:
                device = devices.get(device_id)
                if device is None:
                    # Deleted between listing and lookup
                    continue
                if error is not None:
                    message = error['message']
                    logger.warning(f"Could not check device {mask_identifier(device_id)}: {message}")
                    repo.record_check_error(device, message, now)
                    report.errors.append({'device_id': device_id, 'error': error})
                    continue
                self._apply(repo, device, state, now, report)

    def _apply(self, repo: DeviceRepository, device, state: DeviceState, now, report: ReconciliationReport) -> None:
        mismatch = bool(state.external_user_id) and state.external_user_id != device.user_id
        if mismatch:
            logger.warning(
                f"Device {mask_identifier(device.device_id)} owned by {device.user_id} "
                f"reports external user id {state.external_user_id}"
            )
            report.mismatched.append(device.device_id)

        repo.apply_provider_state(
            device,
            subscribed=state.subscribed,
            invalid=state.invalid,
            external_user_id_mismatch=mismatch,
            last_active_at=state.last_active_at,
            provider_state=state.raw,
            now=now,
        )

        if state.invalid:
            report.invalid += 1
        if state.subscription == SubscriptionState.SUBSCRIBED:
            report.subscribed += 1
        elif state.subscription == SubscriptionState.PENDING:
            report.pending += 1
        else:
            report.unsubscribed += 1
