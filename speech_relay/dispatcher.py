#!/usr/bin/env python3
"""
Speech relay WebSocket server
Accepts client connections and runs one relay controller per connection
"""

import asyncio
import logging
import ssl
import uuid
from datetime import datetime
from http import HTTPStatus
from typing import Dict, Optional
from urllib.parse import urlsplit

from websockets.asyncio.server import Server, ServerConnection, serve

from .client_channel import ClientChannel
from .relay_controller import RelayController, SessionFactory
from .recognition_session import RecognitionSession
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

# RFC 6455 "Try Again Later"
CLOSE_TRY_AGAIN_LATER = 1013


class ConnectionDispatcher:
    """
    Accepts connections and owns their relay controllers

    Connections share nothing but the settings passed in here.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory = RecognitionSession.open
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.controllers: Dict[str, RelayController] = {}
        self.total_connections = 0
        self.server: Optional[Server] = None

    async def start(self) -> Server:
        """Start listening; returns the underlying websockets server"""
        server_settings = self.settings.server
        ws_settings = self.settings.websocket
        ssl_context = self._create_ssl_context() if server_settings.tls_enabled else None

        self.server = await serve(
            self.handle_connection,
            server_settings.host,
            server_settings.port,
            process_request=self._check_path,
            ssl=ssl_context,
            max_size=ws_settings.max_message_size,
            max_queue=ws_settings.max_queue,
            write_limit=ws_settings.write_limit,
            ping_interval=ws_settings.ping_interval_s,
        )
        logger.info(f"WebSocket server started on {self.settings.get_app_url()}")
        logger.info(f"Riva target: {self.settings.backend.target()}")
        return self.server

    async def serve_forever(self):
        if self.server is None:
            await self.start()
        await self.server.serve_forever()

    async def stop(self):
        """Stop accepting connections and close the open ones"""
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("WebSocket server stopped")

    def _create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context for secure WebSocket connections"""
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(self.settings.server.ssl_cert, self.settings.server.ssl_key)
        logger.info(f"SSL enabled with cert: {self.settings.server.ssl_cert}")
        return ssl_context

    def _check_path(self, connection: ServerConnection, request):
        if urlsplit(request.path).path != self.settings.websocket.path:
            logger.warning(f"Rejecting upgrade on unknown path {request.path}")
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def handle_connection(self, websocket: ServerConnection):
        """Run one connection from accept to teardown"""
        if len(self.controllers) >= self.settings.websocket.max_connections:
            logger.warning(f"Connection limit {self.settings.websocket.max_connections} reached, "
                           f"refusing {websocket.remote_address}")
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "Server busy")
            return

        connection_id = str(uuid.uuid4())
        channel = ClientChannel(websocket, connection_id)
        controller = RelayController(
            channel,
            self.settings.backend,
            self.settings.audio,
            session_factory=self.session_factory,
        )
        self.controllers[connection_id] = controller
        self.total_connections += 1
        connected_at = datetime.now()
        logger.info(f"New connection {connection_id} from {websocket.remote_address}. "
                    f"Active connections: {len(self.controllers)}")

        try:
            await controller.run()
        except Exception:
            logger.exception(f"Error handling connection {connection_id}")
        finally:
            del self.controllers[connection_id]
            duration = (datetime.now() - connected_at).total_seconds()
            logger.info(f"Connection {connection_id} removed after {duration:.1f}s. "
                        f"Sessions: {controller.sessions_opened}, "
                        f"active connections: {len(self.controllers)}")


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


async def run_server(settings: Settings):
    dispatcher = ConnectionDispatcher(settings)
    try:
        await dispatcher.serve_forever()
    finally:
        await dispatcher.stop()


def main():
    """Main entry point for standalone execution"""
    settings = get_settings()
    configure_logging(settings.observability.level)
    try:
        asyncio.run(run_server(settings))
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")


if __name__ == "__main__":
    main()
