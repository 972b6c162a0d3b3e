import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone

import httpx
import structlog

from usagewatch.errors import AuthError, UsageError
from usagewatch.metrics import PollMetrics
from usagewatch.models import AuthStatus, ErrorState, UsageState
from usagewatch.provider.base import FetchResult, UsageFetcher
from usagewatch.publisher import StatePublisher
from usagewatch.registry import AccountRegistry

logger = structlog.get_logger()

DEFAULT_POLL_INTERVAL_SECONDS = 300


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


@dataclass
class PollingSession:
    """
    PollingSession is the runtime state of the one live polling loop.
    """

    account_id: "str"
    generation: "int"
    task: "asyncio.Task[None]"
    last_error: "ErrorState | None" = None
    # session token the server answered 401/403 for, not sent again
    rejected_token: "str | None" = None


class PollingSupervisor:
    """
    PollingSupervisor runs at most one background polling loop, bound
    to the registry's active account.

    Every start or cancel bumps a generation counter. A loop or one-off
    refresh only publishes while the generation it was started with is
    still current and its account is still the active one, so a tick
    that was in flight during an account switch is dropped instead of
    being published under the new account.

    Fetch failures never propagate: they are turned into published
    error states. A session key the server rejected is not sent again
    by the loop; polling resumes once the registry returns a different
    key for the account.

    sync, when given, is called before every loop tick and before a
    rotated key is written back. It lets the caller pick up changes
    other processes made to the stored accounts.
    """

    def __init__(
        self,
        registry: "AccountRegistry",
        fetcher: "UsageFetcher",
        publisher: "StatePublisher | None" = None,
        metrics: "PollMetrics | None" = None,
        interval_seconds: "float" = DEFAULT_POLL_INTERVAL_SECONDS,
        clock: "Callable[[], datetime]" = _utcnow,
        sync: "Callable[[], None] | None" = None,
    ) -> "None":
        self._registry = registry
        self._fetcher = fetcher
        self.publisher = publisher or StatePublisher()
        self._metrics = metrics
        self._interval = interval_seconds
        self._clock = clock
        self._sync = sync
        self._generation = 0
        self._session: "PollingSession | None" = None
        self._oneshots: "set[asyncio.Task[None]]" = set()
        self._unsubscribe: "Callable[[], None] | None" = None

    @property
    def session(self) -> "PollingSession | None":
        return self._session

    @property
    def is_running(self) -> "bool":
        return self._session is not None and not self._session.task.done()

    @property
    def bound_account_id(self) -> "str | None":
        return self._session.account_id if self._session is not None else None

    def attach(self) -> "None":
        """
        restarts the loop whenever the registry's active account changes.
        """
        if self._unsubscribe is None:
            self._unsubscribe = self._registry.subscribe(self._on_active_changed)

    def detach(self) -> "None":
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def start(self) -> "bool":
        """
        starts polling the active account. Any running loop is cancelled
        first. Without usable credentials the supervisor stays idle and
        publishes a not-configured state. Must be called from a running
        event loop.
        """
        account_id = self._registry.active_id
        self.cancel()

        if account_id is None or self._registry.credentials(account_id) is None:
            self.publisher.publish(
                UsageState(account_id=account_id, auth_status=AuthStatus.NOT_CONFIGURED)
            )
            logger.info("polling_idle", account_id=account_id)
            return False

        generation = self._generation

        def _reset(state: "UsageState") -> "UsageState":
            # a restart for the same account keeps the last snapshot
            if state.account_id == account_id:
                return replace(state, error=None, auth_status=AuthStatus.CONNECTED)
            return UsageState(account_id=account_id, auth_status=AuthStatus.CONNECTED)

        self.publisher.update(_reset)

        task = asyncio.get_running_loop().create_task(
            self._run(account_id, generation),
            name=f"usagewatch-poll-{account_id}",
        )
        self._session = PollingSession(
            account_id=account_id,
            generation=generation,
            task=task,
        )
        logger.info(
            "polling_started",
            account_id=account_id,
            interval=self._interval,
        )
        return True

    def restart(self) -> "bool":
        self.cancel()
        return self.start()

    def cancel(self) -> "None":
        """
        cancels the running loop, if any. Safe to call while idle.
        """
        self._generation += 1
        session, self._session = self._session, None
        if session is None:
            return

        session.task.cancel()
        logger.info("polling_cancelled", account_id=session.account_id)

    async def stop(self) -> "None":
        """
        cancels the loop and any one-off refreshes and waits for them
        to finish.
        """
        session = self._session
        self.cancel()

        tasks: "list[asyncio.Task[None]]" = list(self._oneshots)
        for task in tasks:
            task.cancel()
        if session is not None:
            tasks.append(session.task)

        await asyncio.gather(*tasks, return_exceptions=True)

    async def close(self) -> "None":
        self.detach()
        await self.stop()
        await self._fetcher.close()

    def fetch_now(self) -> "asyncio.Task[None] | None":
        """
        fetches once for the active account right away, outside the
        loop's schedule. Unlike a loop tick it also retries a key the
        server rejected. Returns the task, or None without an active
        account.
        """
        account_id = self._registry.active_id
        if account_id is None:
            return None

        task = asyncio.get_running_loop().create_task(
            self._poll(account_id, self._generation)
        )
        self._oneshots.add(task)
        task.add_done_callback(self._oneshots.discard)
        return task

    def _on_active_changed(self, account_id: "str | None") -> "None":
        logger.debug("active_account_switch", account_id=account_id)
        self.restart()

    def _is_current(self, account_id: "str", generation: "int") -> "bool":
        return (
            generation == self._generation
            and self._registry.active_id == account_id
        )

    def _current_session(self, generation: "int") -> "PollingSession | None":
        if self._session is not None and self._session.generation == generation:
            return self._session
        return None

    def _token_rejected(self, account_id: "str", generation: "int") -> "bool":
        session = self._current_session(generation)
        if session is None or session.rejected_token is None:
            return False

        credentials = self._registry.credentials(account_id)
        if credentials is not None and credentials.session_token == session.rejected_token:
            logger.debug("poll_skipped_rejected_token", account_id=account_id)
            return True

        session.rejected_token = None
        return False

    async def _run(self, account_id: "str", generation: "int") -> "None":
        while True:
            if self._sync is not None:
                self._sync()
            if not self._is_current(account_id, generation):
                break
            if not self._token_rejected(account_id, generation):
                await self._poll(account_id, generation)
            await asyncio.sleep(self._interval)

        logger.debug("polling_superseded", account_id=account_id)

    async def _poll(self, account_id: "str", generation: "int") -> "None":
        # credentials are read on every tick so saved changes apply
        # without a restart
        credentials = self._registry.credentials(account_id)
        if credentials is None:
            logger.warning("poll_skipped_missing_credentials", account_id=account_id)
            if self._is_current(account_id, generation):
                self.publisher.update(
                    lambda s: replace(s, auth_status=AuthStatus.NOT_CONFIGURED)
                )
            return

        started = time.monotonic()
        try:
            result = await self._fetcher.fetch_usage(
                credentials.session_token,
                credentials.org_id,
            )
        except AuthError as e:
            logger.warning(
                "poll_auth_failed",
                account_id=account_id,
                status_code=e.status_code,
            )
            session = self._current_session(generation)
            if session is not None:
                session.rejected_token = credentials.session_token
            self._fail(account_id, generation, ErrorState.AUTH_EXPIRED, "auth")
            return
        except (UsageError, httpx.HTTPError) as e:
            logger.warning("poll_failed", account_id=account_id, error=str(e))
            self._fail(account_id, generation, ErrorState.NETWORK_ERROR, "network")
            return
        except Exception:
            logger.exception("poll_unexpected_error", account_id=account_id)
            self._fail(account_id, generation, ErrorState.NETWORK_ERROR, "unexpected")
            return
        finally:
            if self._metrics is not None:
                self._metrics.observe_poll_duration(
                    account_id, time.monotonic() - started
                )

        self._succeed(account_id, generation, result)

    def _succeed(
        self,
        account_id: "str",
        generation: "int",
        result: "FetchResult",
    ) -> "None":
        # the rotated key belongs to this account even if it is no
        # longer the active one, the old key may already be invalid
        if result.rotated_token:
            if self._sync is not None:
                self._sync()
            if self._registry.get(account_id) is not None:
                self._registry.save_session_token(result.rotated_token, account_id)
                logger.info("session_token_rotated", account_id=account_id)

        if self._metrics is not None:
            self._metrics.set_last_poll_success(account_id, time.time())
            self._metrics.update_snapshot(account_id, result.snapshot)

        if not self._is_current(account_id, generation):
            logger.debug("poll_result_dropped", account_id=account_id)
            return

        self.publisher.publish(
            UsageState(
                account_id=account_id,
                snapshot=result.snapshot,
                last_updated=self._clock(),
                error=None,
                auth_status=AuthStatus.CONNECTED,
            )
        )
        session = self._current_session(generation)
        if session is not None:
            session.last_error = None
            session.rejected_token = None
        logger.info("poll_success", account_id=account_id)

    def _fail(
        self,
        account_id: "str",
        generation: "int",
        error: "ErrorState",
        kind: "str",
    ) -> "None":
        if self._metrics is not None:
            self._metrics.inc_poll_error(account_id, kind)

        if not self._is_current(account_id, generation):
            logger.debug("poll_error_dropped", account_id=account_id)
            return

        def _apply(state: "UsageState") -> "UsageState":
            if error is ErrorState.AUTH_EXPIRED:
                return replace(
                    state,
                    account_id=account_id,
                    error=error,
                    auth_status=AuthStatus.EXPIRED,
                )
            return replace(state, account_id=account_id, error=error)

        self.publisher.update(_apply)
        session = self._current_session(generation)
        if session is not None:
            session.last_error = error
