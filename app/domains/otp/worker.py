import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from app.core.store import CredentialStore
from app.domains.otp.engine import OtpEngine

logger = logging.getLogger(__name__)


class OtpSweepWorker:
    """Periodically purges expired one-time codes. Runs off the request path."""

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        engine_factory: Callable[[CredentialStore], OtpEngine],
        interval_seconds: float = 3600,
    ) -> None:
        self.session_factory = session_factory
        self.engine_factory = engine_factory
        self.interval_seconds = interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None

    def run_once(self) -> int:
        db = self.session_factory()
        try:
            return self.engine_factory(CredentialStore(db)).sweep_expired()
        finally:
            db.close()

    async def start(self) -> None:
        if self.running:
            logger.warning("OTP sweep worker is already running")
            return
        if self.interval_seconds <= 0:
            logger.info("OTP sweep worker not started (interval disabled)")
            return
        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info("OTP sweep worker started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        logger.info("OTP sweep worker stopped")

    async def _run(self) -> None:
        while self.running:
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("OTP sweep failed; retrying next interval")
            await asyncio.sleep(self.interval_seconds)
