import argparse
import asyncio
import signal

import httpx
import structlog
from prometheus_client import start_http_server

from usagewatch.aggregator import (
    format_time_remaining,
    highest_reset_limit,
    highest_reset_time,
    menu_bar_text,
    present_limits,
    usage_level,
)
from usagewatch.cli import parse_args
from usagewatch.config import Config
from usagewatch.errors import AuthError, UsageError
from usagewatch.logging import setup_logging
from usagewatch.metrics import PollMetrics
from usagewatch.models import UsageSnapshot, UsageState
from usagewatch.provider.claude import ClaudeUsageFetcher
from usagewatch.registry import DEFAULT_ACCOUNT_LABEL, AccountRegistry
from usagewatch.store import FileWatcher, JsonStateStore
from usagewatch.supervisor import PollingSupervisor
from usagewatch.vault import (
    CredentialVault,
    EncryptedFileSecretBackend,
    PlainFileSecretBackend,
    load_or_create_key,
)

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '127.0.0.1:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_registry(config: "Config") -> "AccountRegistry":
    key = load_or_create_key(config.key_path, config.vault_key)
    vault = CredentialVault(
        secure=EncryptedFileSecretBackend(config.secrets_path, key),
        plain=PlainFileSecretBackend(config.settings_path),
    )
    return AccountRegistry(vault, JsonStateStore(config.accounts_path))


def state_watcher(config: "Config") -> "FileWatcher":
    return FileWatcher(config.accounts_path, config.secrets_path, config.settings_path)


def sync_registry(registry: "AccountRegistry", watcher: "FileWatcher") -> "None":
    """
    reloads the registry when another process, such as 'usagewatch
    login', changed the stored accounts or secrets.
    """
    if watcher.changed():
        registry.reload()


def _print_snapshot(snapshot: "UsageSnapshot", config: "Config") -> "None":
    for item in present_limits(snapshot):
        level = usage_level(item.limit.utilization).value
        line = f"{item.name:<22} {item.limit.utilization:5.1f}%  {level:<6}"
        if item.limit.resets_at is not None:
            line += f"  resets in {format_time_remaining(item.limit.resets_at)}"
        print(line)
    print(menu_bar_text(snapshot, config.reset_display))


def _log_state(state: "UsageState", config: "Config") -> "None":
    if state.error is not None:
        logger.warning(
            "usage_state_error",
            account_id=state.account_id,
            error=state.error.value,
            auth_status=state.auth_status.value,
        )
        return
    if state.snapshot is None:
        logger.info(
            "usage_state_changed",
            account_id=state.account_id,
            auth_status=state.auth_status.value,
        )
        return

    best = highest_reset_limit(state.snapshot)
    reset = highest_reset_time(state.snapshot)
    logger.info(
        "usage_updated",
        account_id=state.account_id,
        status=menu_bar_text(state.snapshot, config.reset_display),
        highest_limit=best.key if best is not None else None,
        level=usage_level(best.limit.utilization).value if best is not None else None,
        resets_in=format_time_remaining(reset) if reset is not None else None,
    )


def _run(config: "Config", registry: "AccountRegistry") -> "int":
    fetcher = ClaudeUsageFetcher(base_url=config.base_url, timeout=config.http_timeout)
    metrics = None
    if config.metrics_enabled:
        metrics = PollMetrics()
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    watcher = state_watcher(config)
    supervisor = PollingSupervisor(
        registry,
        fetcher,
        metrics=metrics,
        interval_seconds=config.poll_interval,
        sync=lambda: sync_registry(registry, watcher),
    )

    def _refresh() -> "None":
        sync_registry(registry, watcher)
        supervisor.fetch_now()
    supervisor.publisher.subscribe(lambda state: _log_state(state, config))

    async def _main() -> "None":
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, stop polling gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        # SIGHUP picks up stored changes and forces an immediate refresh
        loop.add_signal_handler(signal.SIGHUP, _refresh)

        supervisor.attach()
        try:
            if not supervisor.start():
                logger.warning(
                    "no_configured_account",
                    hint="run 'usagewatch login <session-key> <org-id>'",
                )
            await stop.wait()
        finally:
            logger.info("shutting_down")
            await supervisor.close()
            logger.info("shutdown_complete")

    asyncio.run(_main())
    return 0


def _check(config: "Config", registry: "AccountRegistry") -> "int":
    account = registry.active_account
    if account is None:
        print("No account configured.")
        return 1
    credentials = registry.credentials(account.id)
    if credentials is None:
        print(f"Account {account.label!r} has no credentials.")
        return 1

    async def _fetch() -> "int":
        fetcher = ClaudeUsageFetcher(
            base_url=config.base_url,
            timeout=config.http_timeout,
        )
        try:
            result = await fetcher.fetch_usage(
                credentials.session_token, credentials.org_id
            )
        except AuthError:
            print("Authentication failed, check the session key.")
            return 2
        except (UsageError, httpx.HTTPError) as e:
            print(f"Request failed: {e}")
            return 1
        finally:
            await fetcher.close()

        if result.rotated_token:
            registry.save_session_token(result.rotated_token, account.id)
        print(f"Connection successful ({account.label})")
        _print_snapshot(result.snapshot, config)
        return 0

    return asyncio.run(_fetch())


def _login(args: "argparse.Namespace", registry: "AccountRegistry") -> "int":
    account_id = args.account_id or registry.active_id
    if account_id is None:
        account_id = registry.add(DEFAULT_ACCOUNT_LABEL).id
    elif registry.get(account_id) is None:
        print(f"Unknown account {account_id}")
        return 1

    saved = registry.save_session_token(args.session_key, account_id)
    saved = registry.save_org_id(args.org_id, account_id) and saved
    if not saved:
        print("Warning: credentials could not be stored and will not survive a restart.")
    print(f"Credentials saved for {account_id}")
    print("A running 'usagewatch run' uses them from its next poll, or now on SIGHUP.")
    return 0


def _accounts(args: "argparse.Namespace", registry: "AccountRegistry") -> "int":
    if args.action == "add":
        account = registry.add(args.label)
        print(account.id)
        return 0

    if args.action == "list":
        for account in registry.accounts:
            marker = "*" if account.id == registry.active_id else " "
            configured = "configured" if account.is_configured else "no credentials"
            print(f"{marker} {account.id}  {account.label}  ({configured})")
        return 0

    if registry.get(args.account_id) is None:
        print(f"Unknown account {args.account_id}")
        return 1

    if args.action == "remove":
        registry.remove(args.account_id)
    elif args.action == "rename":
        registry.rename(args.account_id, args.label)
    elif args.action == "use" and not registry.set_active(args.account_id):
        print("Could not persist the active account.")
        return 1
    return 0


def main() -> "None":
    config, args = parse_args()
    setup_logging(config.log_level, config.log_format)

    registry = build_registry(config)

    if args.command == "run":
        code = _run(config, registry)
    elif args.command == "check":
        code = _check(config, registry)
    elif args.command == "login":
        code = _login(args, registry)
    else:
        code = _accounts(args, registry)

    raise SystemExit(code)


if __name__ == "__main__":
    main()
