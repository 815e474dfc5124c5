import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from .clients.lastfm_client import LastFMClient
from .clients.proxy_client import ProxyClient
from .engine import NowPlayingEngine
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class NowPlayingService:
    def __init__(self):
        self.lastfm = LastFMClient()
        self.proxy = ProxyClient()
        self.engine = NowPlayingEngine(
            settings.LFM_USER,
            direct_client=self.lastfm,
            mediated_client=self.proxy,
            session_key=settings.LFM_SESSION_KEY
        )

        # Link engine and upstream client to server module
        server.engine = self.engine
        server.lastfm = self.lastfm

    async def start(self):
        self.engine.start()

        tasks = []
        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            tasks.append(asyncio.create_task(uvicorn.Server(config).serve()))
        else:
            # Nothing else to drive the loop; keep the engine alive
            tasks.append(asyncio.create_task(asyncio.Event().wait()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.engine.stop()
            await self.lastfm.close()
            await self.proxy.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

if __name__ == "__main__":
    if not settings.LFM_API_KEY or not settings.LFM_USER:
        raise SystemExit("LFM_API_KEY and LFM_USER are required")
    if not settings.HTTP_SERVER_ENABLED and settings.START_IN_MEDIATED_MODE:
        logger.warning(f"Mediated mode without the built-in server relies on {settings.PROXY_BASE_URL}")

    signal.signal(signal.SIGTERM, handle_sigterm)
    service = NowPlayingService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
