"""Composition root.

NestRuntime owns everything with process lifetime: configuration, the
instance store, per-instance locks, the selected engine and the deploy
ticket store with its sweep task. The API layer builds one runtime at
startup, with configure_logging=True when it owns the process, and passes
runtime.engine to its handlers.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from clawnest import __version__
from clawnest.config import NestConfig, get_nest_config
from clawnest.engines import Engine, InstanceLocks, create_engine, detect_engine
from clawnest.logging import setup_logging
from clawnest.logging_schema import LogEvent
from clawnest.store import InstanceStore
from clawnest.tickets import DeployTicketStore

logger = logging.getLogger(__name__)


class NestRuntime:
    """Selected engine plus the shared state it works against."""

    def __init__(
        self,
        config: NestConfig | None = None,
        engine_kind: str | None = None,
        configure_logging: bool = False,
    ) -> None:
        self._config = config or get_nest_config()
        self._engine_kind = engine_kind
        self._configure_logging = configure_logging
        self.store = InstanceStore(
            self._config.store.resolve_data_dir(),
            store_file=self._config.store.store_file,
            base_port=self._config.store.base_port,
        )
        self.locks = InstanceLocks()
        self.tickets = DeployTicketStore(
            ttl=self._config.deploy.ticket_ttl,
            sweep_interval=self._config.deploy.ticket_sweep_interval,
        )
        self._engine: Engine | None = None

    @property
    def config(self) -> NestConfig:
        return self._config

    @property
    def engine(self) -> Engine:
        """The selected engine.

        Raises:
            RuntimeError: If called before init().
        """
        if self._engine is None:
            raise RuntimeError("Runtime not initialized. Call init() first.")
        return self._engine

    async def init(self, argv: Sequence[str] = ()) -> None:
        """Select the engine once and start background tasks."""
        if self._configure_logging:
            setup_logging(self._config.logging)
        kind = self._engine_kind or await detect_engine(self._config, argv)
        self._engine = create_engine(kind, self._config, self.store, self.locks)
        self.tickets.start()
        logger.info(
            "Runtime started",
            extra={
                "event": LogEvent.RUNTIME_STARTED,
                "version": __version__,
                "engine": kind,
                "data_dir": str(self.store.data_dir),
            },
        )

    async def close(self) -> None:
        await self.tickets.close()
        if self._engine is not None:
            await self._engine.close()
            self._engine = None
        logger.info("Runtime stopped", extra={"event": LogEvent.RUNTIME_STOPPED})

    async def __aenter__(self) -> NestRuntime:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
