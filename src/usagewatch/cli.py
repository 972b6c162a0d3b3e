import argparse

from usagewatch.config import Config
from usagewatch.models import ResetDisplay


def _build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="usagewatch",
        description="Polls Claude usage limits for one or more accounts",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address for the metrics exporter, empty to disable (default: :9186)",
    )
    parser.add_argument(
        "--poll.interval",
        dest="poll_interval",
        type=int,
        default=300,
        help="Poll interval in seconds (default: 300)",
    )
    parser.add_argument(
        "--http.timeout",
        dest="http_timeout",
        type=float,
        default=30.0,
        help="HTTP timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--display.reset",
        dest="reset_display",
        default=None,
        choices=[d.value for d in ResetDisplay],
        help="Show the reset as a clock time or a countdown",
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Poll the active account (default)")
    commands.add_parser("check", help="Fetch usage once for the active account")

    login = commands.add_parser("login", help="Save credentials for an account")
    login.add_argument("session_key", help="Value of the sessionKey cookie")
    login.add_argument("org_id", help="Organization id")
    login.add_argument(
        "--account",
        dest="account_id",
        default=None,
        help="Account id (default: the active account, created if none)",
    )

    accounts = commands.add_parser("accounts", help="Manage accounts")
    actions = accounts.add_subparsers(dest="action", required=True)
    actions.add_parser("list", help="List accounts")
    add = actions.add_parser("add", help="Add an account")
    add.add_argument("label")
    remove = actions.add_parser("remove", help="Remove an account and its secrets")
    remove.add_argument("account_id")
    rename = actions.add_parser("rename", help="Rename an account")
    rename.add_argument("account_id")
    rename.add_argument("label")
    use = actions.add_parser("use", help="Make an account the active one")
    use.add_argument("account_id")

    return parser


def parse_args(
    argv: "list[str] | None" = None,
) -> "tuple[Config, argparse.Namespace]":
    """
    parses the command line on top of the environment config and
    returns the config together with the selected command.
    """
    args = _build_parser().parse_args(argv)
    if args.command is None:
        args.command = "run"

    config = Config.from_env()
    config.listen_address = args.listen_address
    config.poll_interval = args.poll_interval
    config.http_timeout = args.http_timeout
    config.log_level = args.log_level
    config.log_format = args.log_format
    if args.reset_display is not None:
        config.reset_display = ResetDisplay(args.reset_display)
    return config, args
