"""
Lifeline Main Application Entry Point

Initializes configuration, logging and the database, wires the dispatch engine
to its collaborators and serves the realtime gateway with uvicorn.
"""

import asyncio
import signal
import sys
import traceback
from typing import Optional

import uvicorn

from lifeline.core.config import ConfigurationManager
from lifeline.core.database import initialize_database
from lifeline.core.logging import initialize_logging, get_logger
from lifeline.services.collaborators.aed_index import StaticAEDIndex
from lifeline.services.collaborators.push import create_push_sender
from lifeline.services.collaborators.triage import GroqTriageService, TriageConfig
from lifeline.services.dispatch.dispatch_engine import DispatchConfig, DispatchEngine
from lifeline.services.dispatch.emergency_store import EmergencyStore
from lifeline.services.dispatch.location_ingest import LocationIngest
from lifeline.services.dispatch.session_binder import SessionBinder
from lifeline.services.dispatch.user_directory import UserDirectory
from lifeline.services.realtime.gateway import ConnectionManager, RealtimeGateway


class LifelineApplication:
    """Main Lifeline application class"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.db_manager = None
        self.engine: Optional[DispatchEngine] = None
        self.gateway: Optional[RealtimeGateway] = None
        self.server: Optional[uvicorn.Server] = None
        self.logger = None

        self.running = False
        self.shutdown_event = asyncio.Event()

    def initialize(self):
        """Initialize all application components"""
        print("Initializing Lifeline...")

        try:
            self.config_manager = ConfigurationManager(self.config_dir)
            self.config_manager.load_config()

            initialize_logging(self.config_manager.config)
            self.logger = get_logger('main')

            self.logger.info("Lifeline starting up...")
            self.logger.info(f"Version: {self.config_manager.get('app.version', '1.0.0')}")
            self.logger.info(f"Debug mode: {self.config_manager.get('app.debug', False)}")

            self._initialize_database()
            self._initialize_dispatch()

            self.logger.info("Core systems initialized successfully")

        except Exception as e:
            if self.logger:
                self.logger.error(f"Failed to initialize application: {e}", exc_info=True)
            else:
                print(f"Failed to initialize application: {e}")
                traceback.print_exc()
            raise

    def _initialize_database(self):
        self.logger.info("Initializing database...")

        db_path = self.config_manager.get('database.path', 'data/lifeline.db')
        max_connections = self.config_manager.get('database.max_connections', 10)
        self.db_manager = initialize_database(db_path, max_connections)

        self.logger.info("Database initialized successfully")

    def _initialize_dispatch(self):
        """Build collaborators, the dispatch engine and the gateway"""
        dispatch_config = DispatchConfig.from_dict(self.config_manager.get_section('dispatch'))

        triage_settings = dict(self.config_manager.get_section('triage'))
        triage_settings.setdefault('timeout_seconds', dispatch_config.ai_timeout_seconds)
        triage = GroqTriageService(TriageConfig.from_dict(triage_settings))
        if not triage.enabled:
            self.logger.info("AI triage disabled")

        aed_index = StaticAEDIndex.from_file(self.config_manager.get('aed.data_file', 'data/aeds.json'))
        push = create_push_sender(self.config_manager.get_section('push'))

        users = UserDirectory(self.db_manager)
        store = EmergencyStore(self.db_manager)
        connections = ConnectionManager()

        self.engine = DispatchEngine(
            store=store,
            users=users,
            transport=connections,
            aed_index=aed_index,
            triage=triage,
            push=push,
            config=dispatch_config
        )

        binder = SessionBinder(
            users,
            self.config_manager.get('auth.secret_key'),
            self.config_manager.get('auth.algorithm', 'HS256')
        )

        self.gateway = RealtimeGateway(
            self.engine,
            binder,
            LocationIngest(users),
            connections,
            debug=self.config_manager.get('app.debug', False)
        )

    async def start(self):
        """Start the application and serve until a shutdown signal"""
        self.initialize()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:
                signal.signal(sig, lambda signum, frame: self._signal_handler(signum))

        host = self.config_manager.get('server.host', '0.0.0.0')
        port = self.config_manager.get('server.port', 8080)
        config = uvicorn.Config(
            app=self.gateway.app,
            host=host,
            port=port,
            log_level="debug" if self.config_manager.get('app.debug', False) else "info"
        )
        self.server = uvicorn.Server(config)
        # signals are handled here, not by uvicorn
        self.server.install_signal_handlers = lambda: None

        server_task = asyncio.create_task(self.server.serve())
        self.running = True
        self.logger.info(f"Lifeline dispatch listening on ws://{host}:{port}/ws")

        shutdown_waiter = asyncio.create_task(self.shutdown_event.wait())
        try:
            await asyncio.wait({server_task, shutdown_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if shutdown_waiter.done():
                self.logger.info("Shutdown signal received")
            else:
                self.logger.error("Server exited unexpectedly")
        finally:
            shutdown_waiter.cancel()
            await self.shutdown(server_task)

    def _signal_handler(self, signum):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}")
        self.shutdown_event.set()

    async def shutdown(self, server_task: Optional[asyncio.Task] = None):
        """Stop serving, which also stops the dispatch engine, then close the database"""
        self.running = False

        if self.server:
            self.server.should_exit = True
        if server_task:
            try:
                await asyncio.wait_for(server_task, timeout=30)
            except asyncio.TimeoutError:
                self.logger.error("Server did not stop within 30s")
                server_task.cancel()

        if self.db_manager:
            self.db_manager.close()
        self.logger.info("Lifeline stopped")


async def run():
    app = LifelineApplication()
    await app.start()


def main():
    """Console entry point"""
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nApplication interrupted")
        sys.exit(0)
    except Exception as e:
        print(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
