from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional

from .assignments import NumberAssignments
from .config import AppConfig
from .errors import AuthError
from .extraction import ServiceTable
from .monitor import OtpMonitor
from .notify import Notifier
from .notify.formatting import format_startup, otp_keyboard, panel_link
from .numbers import NumbersCache
from .portal.api import DateWindow, PortalApi
from .portal.challenge import build_challenge_resolver
from .portal.selectors import PortalSelectors
from .portal.serializer import PageSerializer
from .portal.session import BrowserLauncher, SessionContext, SessionManager
from .scraper import ScrapeOrchestrator
from .state import CookieJar, DedupStore, JsonBlob, NoveltyRegistry
from .util.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


def _scratch_copy(path: Path, scratch: Path) -> Path:
    # Seeded from the real file so a dry run still skips OTPs that were already sent.
    target = scratch / path.name
    if path.exists():
        shutil.copy2(path, target)
    return target


def _format_uptime(seconds: float) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


class RelayService:
    """Owns the canonical SessionContext and every component built around it."""

    def __init__(
        self,
        cfg: AppConfig,
        *,
        clock: Clock,
        context: SessionContext,
        session_manager: SessionManager,
        numbers: NumbersCache,
        assignments: NumberAssignments,
        monitor: OtpMonitor,
        notifier: Notifier,
        scratch_dir: Optional[tempfile.TemporaryDirectory] = None,
    ) -> None:
        self.cfg = cfg
        self.clock = clock
        self.context = context
        self.session_manager = session_manager
        self.numbers = numbers
        self.assignments = assignments
        self.monitor = monitor
        self.notifier = notifier
        self._scratch_dir = scratch_dir
        self._background: set[asyncio.Task] = set()

    @classmethod
    def build(
        cls,
        cfg: AppConfig,
        *,
        notifier: Notifier,
        clock: Optional[Clock] = None,
        launcher: Optional[BrowserLauncher] = None,
        dry_run: bool = False,
    ) -> "RelayService":
        """
        Wire every component around one SessionContext.

        With `dry_run`, sent-OTP history and known ranges live in a throwaway directory so a trial run
        never suppresses later deliveries or range alerts. Cookies and the numbers cache stay shared.
        """
        clock = clock or SystemClock()
        selectors = PortalSelectors()
        context = SessionContext()
        serializer = PageSerializer()
        st = cfg.state
        history_path, ranges_path = st.otp_history_path, st.known_ranges_path
        scratch_dir = None
        if dry_run:
            scratch_dir = tempfile.TemporaryDirectory(prefix="ivas-dry-run-")
            history_path = _scratch_copy(history_path, Path(scratch_dir.name))
            ranges_path = _scratch_copy(ranges_path, Path(scratch_dir.name))

        session_manager = SessionManager(
            cfg.portal,
            context=context,
            cookie_jar=CookieJar(JsonBlob(st.cookies_path)),
            resolver=build_challenge_resolver(
                cfg.portal.challenge_mode,
                clock=clock,
                selectors=selectors,
                poll_interval_s=cfg.portal.challenge_poll_s,
            ),
            serializer=serializer,
            clock=clock,
            launcher=launcher,
            selectors=selectors,
            debug_dir=st.debug_dir,
        )
        api = PortalApi(cfg.portal, context=context, selectors=selectors)

        async def prepare_page(window: DateWindow) -> None:
            await session_manager.prepare_sms_page(window.start_iso, window.end_iso)

        services = (
            ServiceTable.from_patterns((s.label, s.pattern) for s in cfg.services)
            if cfg.services
            else ServiceTable.default()
        )
        scraper = ScrapeOrchestrator(
            api,
            context=context,
            serializer=serializer,
            novelty=NoveltyRegistry(JsonBlob(ranges_path)),
            clock=clock,
            services=services,
            prepare_page=prepare_page,
            days_back=cfg.portal.date_days_back,
            branch_timeout_s=cfg.portal.branch_timeout_s,
        )

        async def fetch_directory() -> list:
            return await api.numbers_directory(page_size=cfg.numbers.page_size)

        numbers = NumbersCache(
            fetch_directory,
            JsonBlob(st.numbers_cache_path),
            serializer=serializer,
            clock=clock,
            ttl_s=cfg.numbers.ttl_s,
        )
        assignments = NumberAssignments()
        monitor = OtpMonitor(
            scraper,
            context=context,
            session_manager=session_manager,
            dedup=DedupStore(JsonBlob(history_path)),
            notifier=notifier,
            group_id=cfg.telegram.group_id,
            clock=clock,
            assignments=assignments,
            keyboard=otp_keyboard(
                panel_url=panel_link(cfg.telegram.bot_token, cfg.telegram.panel_link),
                channel_url=cfg.telegram.channel_link,
            ),
            check_interval_s=cfg.monitor.check_interval_s,
            backoff_s=cfg.monitor.backoff_s,
            failure_threshold=cfg.monitor.failure_threshold,
        )
        scraper.on_new_ranges = monitor.alert_new_ranges

        return cls(
            cfg,
            clock=clock,
            context=context,
            session_manager=session_manager,
            numbers=numbers,
            assignments=assignments,
            monitor=monitor,
            notifier=notifier,
            scratch_dir=scratch_dir,
        )

    async def relogin(self) -> bool:
        try:
            await self.session_manager.authenticate()
        except AuthError as e:
            logger.error("Re-authentication failed: %s", e)
            return False
        return self.context.valid

    def schedule_relogin(self) -> asyncio.Task:
        """Re-authenticate in the background; progress shows up in `status()["authState"]`."""
        task = asyncio.create_task(self.relogin(), name="relogin")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def update_cookies(self, cookies: Iterable[Any]) -> int:
        """Persist operator cookies and start re-authentication without waiting for it."""
        count = self.session_manager.replace_cookies(cookies)
        self.schedule_relogin()
        return count

    def status(self) -> dict[str, Any]:
        stats = self.monitor.stats
        uptime_s = (self.clock.now() - stats.started_at).total_seconds()
        return {
            "status": "running",
            "uptime": _format_uptime(uptime_s),
            "uptimeSeconds": int(uptime_s),
            "totalOtpsSent": stats.total_sent,
            "lastCheck": stats.last_check.isoformat() if stats.last_check else None,
            "isRunning": stats.running,
            "sessionValid": self.context.valid,
            "authState": self.context.auth_state.value,
            "lastError": stats.last_error or self.context.last_error,
            "consecutiveFailures": stats.consecutive_failures,
            "activeSessions": self.assignments.active_count,
        }

    async def send_startup(self, session_ready: bool) -> None:
        text = format_startup(
            session_ready=session_ready,
            check_interval_s=self.cfg.monitor.check_interval_s,
            started_at=self.monitor.stats.started_at,
        )
        try:
            await self.notifier.send(self.cfg.telegram.group_id, text)
        except Exception as e:
            logger.error("Startup message failed: %s", e)

    async def run(self) -> None:
        """Authenticate, serve the control API, and supervise until cancelled."""
        session_ready = await self.relogin()

        server = None
        tasks: list[asyncio.Task] = []
        if self.cfg.control.enabled:
            import uvicorn

            from .control import create_app

            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(self),
                    host=self.cfg.control.host,
                    port=self.cfg.control.port,
                    log_level="warning",
                    access_log=False,
                )
            )
            tasks.append(asyncio.create_task(server.serve(), name="control-api"))
            logger.info("Control API listening on %s:%d", self.cfg.control.host, self.cfg.control.port)

        menu = None
        if self.cfg.telegram.menu_enabled and self.cfg.telegram.bot_token:
            from .notify.menu import build_menu_app

            menu = build_menu_app(self)
            await menu.initialize()
            await menu.start()
            await menu.updater.start_polling()
            logger.info("Telegram menu polling started")

        await self.send_startup(session_ready)
        tasks.append(asyncio.create_task(self.monitor.run_forever(), name="otp-monitor"))

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for t in done:
                if not t.cancelled() and t.exception() is not None:
                    raise t.exception()
        finally:
            self.monitor.stop()
            if server is not None:
                server.should_exit = True
            for t in tasks:
                if t.get_name() == "otp-monitor":
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if menu is not None:
                await menu.updater.stop()
                await menu.stop()
                await menu.shutdown()
            await self.close()

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        await self.session_manager.close()
        if self._scratch_dir is not None:
            self._scratch_dir.cleanup()
            self._scratch_dir = None
