from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable

from .abandonment import AbandonmentEvaluator
from .batch_source import BatchSource, source_from_config
from .cache import TtlCache
from .config import AppConfig
from .contact_cipher import ContactCipher
from .db import SqliteDatabase
from .dispatcher import ExecutionDispatcher
from .incident import IncidentEngine
from .ingestion import IngestionService
from .lead_store import LeadStore
from .ledger import IdempotencyLedger
from .logging_utils import JsonlLogger
from .poller import BatchIngestionPoller
from .scheduler import SequenceScheduler
from .sequence_store import SequenceStore
from .time_utils import utc_now
from .transport import SimulatedTransport, TemplateCatalog, Transport, get_resend_client_from_env
from .workers import PeriodicWorker


class OutreachEngine:
    def __init__(
        self,
        cfg: AppConfig,
        transport: Transport | None = None,
        source_factory: Callable[[], BatchSource] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cfg = cfg
        self.logger = JsonlLogger(cfg.log_dir / "events.jsonl")
        self.db = SqliteDatabase(cfg.state_db)
        self.cache = TtlCache(ttl_seconds=cfg.cache.ttl_seconds, max_entries=cfg.cache.max_entries)
        self.cipher = ContactCipher(cfg.encryption_key)
        self.ledger = IdempotencyLedger(self.db)
        self.leads = LeadStore(self.db, self.cipher, cache=self.cache, clock=clock)
        self.sequence_store = SequenceStore(self.db, cache=self.cache, clock=clock)
        self.ingestion = IngestionService(self.ledger, self.leads, cfg.ingestion, self.logger, clock=clock)
        self.scheduler = SequenceScheduler(self.sequence_store, self.leads, self.logger, clock=clock)

        if transport is None:
            transport = get_resend_client_from_env(timeout=cfg.dispatch.send_timeout_seconds)
        if transport is None:
            self.logger.write("transport_not_configured", {"fallback": "simulated"})
            transport = SimulatedTransport()
        self.transport = transport
        templates = TemplateCatalog.from_file(Path(cfg.templates_file)) if cfg.templates_file else TemplateCatalog.default()
        self.dispatcher = ExecutionDispatcher(
            self.sequence_store,
            self.leads,
            self.transport,
            templates,
            cfg.dispatch,
            self.logger,
            hash_emails=cfg.ingestion.hash_emails,
            clock=clock,
        )

        self.abandonment = AbandonmentEvaluator(self.leads, self.scheduler, cfg.abandonment, self.logger, clock=clock)
        self.ingestion.subscribe(self.abandonment.on_event)
        self.incidents = IncidentEngine(self.db, cfg.incident, cfg.log_dir / "incidents", clock=clock)

        if source_factory is None and cfg.batch_source.configured:
            source_factory = lambda: source_from_config(cfg.batch_source)  # noqa: E731
        self.poller: BatchIngestionPoller | None = None
        if source_factory is not None:
            source_name = "sftp" if cfg.batch_source.sftp_configured else "batch_dir"
            self.poller = BatchIngestionPoller(source_factory, self.ingestion, self.ledger, self.logger, source_name)

        self.workers = [
            PeriodicWorker("dispatcher", cfg.dispatch.interval_seconds, self.dispatcher.tick, self.logger, self.incidents)
        ]
        if self.poller is not None:
            self.workers.append(
                PeriodicWorker(
                    "batch-poller",
                    cfg.batch_source.poll_interval_min * 60,
                    self.poller.poll_once,
                    self.logger,
                    self.incidents,
                )
            )

    @classmethod
    def from_config(cls, cfg: AppConfig, **kwargs) -> OutreachEngine:
        return cls(cfg, **kwargs)

    def start(self) -> None:
        self.cache.start_sweeper(self.cfg.cache.sweep_seconds)
        for worker in self.workers:
            worker.start()
        self.logger.write("engine_started", {"workers": [w.name for w in self.workers]})

    def stop(self) -> None:
        for worker in self.workers:
            worker.stop()
        self.cache.stop_sweeper()
        self.logger.write("engine_stopped", {"workers": [w.name for w in self.workers]})
