import argparse
import getpass
import json
import logging
import sys

from skuid.sync import __version__
from skuid.sync.exception import (
    ArgumentError,
    AuthError,
    DeployInterrupted,
    LocalIOError,
    OperationCancelled,
    PayloadError,
    PlanError,
    ServerError,
    TransportError,
)
from skuid.sync.runtime.settings import Settings, env_name, load_settings
from skuid.sync.sync import (
    EXIT_ARGS,
    EXIT_LOCAL_IO,
    EXIT_OK,
    EXIT_PLAN,
    OperationResult,
    authenticate,
    deploy,
    exit_code_for,
    open_session,
    retrieve,
    watch,
)
from skuid.sync.variables import list_variables, remove_variable, set_variable

log = logging.getLogger("skuid.sync.cli")


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise ArgumentError(f"{self.prog}: {message}")


def _ensure_logging(settings: Settings) -> None:
    fmt = '%(asctime)s - (%(threadName)-10s) - %(name)s - %(levelname)s - %(message)s'
    if (settings.log_format or "text").lower() == "json":
        # JSON payload already includes timestamp; keep formatter minimal.
        fmt = "%(message)s"
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=fmt,
        stream=sys.stderr,
    )


def _env_help(flag: str) -> str:
    return f"(env {env_name(flag)})"


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--host", default=None, help=f"Site host, e.g. example.skuidsite.com {_env_help('host')}")
    p.add_argument("-u", "--username", default=None, help=f"Username {_env_help('username')}")
    p.add_argument("-p", "--password", default=None, help=f"Password {_env_help('password')}")
    p.add_argument("--log-level", default=None, help=f"Log level {_env_help('log_level')}")
    p.add_argument("--log-format", default=None, choices=["text", "json"], help=f"Log format {_env_help('log_format')}")
    p.add_argument("-v", "--verbose", action="store_true", help="Shortcut for --log-level DEBUG")
    p.add_argument("--workers", type=int, default=None, help=f"Parallel shard requests {_env_help('workers')}")


def _add_tree(p: argparse.ArgumentParser, *, filters: bool = True) -> None:
    p.add_argument("-d", "--dir", default=None, help=f"Local metadata directory {_env_help('dir')}")
    if filters:
        p.add_argument("-a", "--app", default=None, help=f"Only this app {_env_help('app')}")
        p.add_argument("--page", action="append", default=None, help=f"Only this page; repeatable {_env_help('page')}")


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="skuid-sync", description="Retrieve, deploy and watch Skuid site metadata")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sp = parser.add_subparsers(dest="cmd", required=True, parser_class=_ArgumentParser)

    retp = sp.add_parser("retrieve", help="Retrieve site metadata into the local directory")
    _add_common(retp)
    _add_tree(retp)
    retp.add_argument("--no-zip", action="store_const", const=True, default=None, help=f"Ask shards for JSON instead of zip {_env_help('no_zip')}")
    retp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    depp = sp.add_parser("deploy", help="Deploy the local directory to the site")
    _add_common(depp)
    _add_tree(depp)
    depp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    watp = sp.add_parser("watch", help="Deploy changed metadata kinds as files change")
    _add_common(watp)
    _add_tree(watp, filters=False)

    varp = sp.add_parser("variables", help="Manage site variables")
    vsp = varp.add_subparsers(dest="variables_cmd", required=True, parser_class=_ArgumentParser)

    getp = vsp.add_parser("get", help="List variables")
    _add_common(getp)
    getp.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    setp = vsp.add_parser("set", help="Create or update a variable")
    _add_common(setp)
    setp.add_argument("--name", required=True)
    setp.add_argument("--value", default="", help="Prompted for (without echo) when empty")
    setp.add_argument("--data-service", default="", help="default, a data service id or a data service name")

    rmp = vsp.add_parser("rm", help="Remove a variable")
    _add_common(rmp)
    rmp.add_argument("--name", required=True)
    rmp.add_argument("--data-service", default="", help="default, a data service id or a data service name")

    return parser


def _settings_from_args(args: argparse.Namespace, env=None) -> Settings:
    overrides = {}
    for key in Settings.model_fields:
        v = getattr(args, key, None)
        if v is not None:
            overrides[key] = v
    if getattr(args, "verbose", False):
        overrides["log_level"] = "DEBUG"
    return load_settings(overrides, env=env)


def _print_failures(result: OperationResult) -> None:
    failures = result.shards.failures
    for name, err in failures.items():
        print(f"FAILED: shard {name}: {err}", file=sys.stderr)
    total = len(result.shards.outcomes)
    print(f"{result.operation} failed: {len(failures)} of {total} shard(s) failed ({', '.join(failures)})", file=sys.stderr)


def _report(result: OperationResult, *, as_json: bool) -> int:
    if as_json:
        print(json.dumps(result.as_dict(), ensure_ascii=False))
    elif result.exit_code == EXIT_OK:
        shards = len(result.shards.outcomes)
        if result.report is not None:
            r = result.report
            print(f"OK: retrieved {len(r.written)} file(s) into {result.target_dir} from {shards} shard(s)")
            if r.quarantined:
                print(f"WARNING: {len(r.quarantined)} entr(y/ies) quarantined", file=sys.stderr)
        else:
            print(f"OK: deployed {result.target_dir} in {shards} shard(s)")
    if result.exit_code != EXIT_OK:
        _print_failures(result)
    return result.exit_code


def _variables(args: argparse.Namespace, settings: Settings) -> int:
    with open_session(settings) as session:
        auth = authenticate(session, settings)
        try:
            if args.variables_cmd == "get":
                variables = list_variables(session, auth)
                if args.json:
                    print(json.dumps([v.model_dump() | {"value": v.display_value()} for v in variables], ensure_ascii=False))
                else:
                    for v in variables:
                        print(f"{v.name}\t{v.data_service_name or v.data_service_id}\t{v.display_value()}")
                return EXIT_OK
            if args.variables_cmd == "set":
                value = args.value or getpass.getpass("Enter value: ")
                action = set_variable(session, auth, args.name, value, args.data_service)
                print(f"OK: {action} variable {args.name}")
                return EXIT_OK
            remove_variable(session, auth, args.name, args.data_service)
            print(f"OK: removed variable {args.name}")
            return EXIT_OK
        except ServerError as e:
            if e.is_unauthorized:
                raise AuthError(str(e)) from e
            print(f"error: {e}", file=sys.stderr)
            return EXIT_PLAN
        except (TransportError, PayloadError) as e:
            print(f"error: {e}", file=sys.stderr)
            return EXIT_PLAN


def main(argv=None, *, env=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        args = _build_parser().parse_args(argv)
        settings = _settings_from_args(args, env=env)
    except ArgumentError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ARGS

    _ensure_logging(settings)

    try:
        if args.cmd == "retrieve":
            return _report(retrieve(settings), as_json=args.json)
        if args.cmd == "deploy":
            return _report(deploy(settings), as_json=args.json)
        if args.cmd == "watch":
            return watch(settings)
        if args.cmd == "variables":
            return _variables(args, settings)
        return EXIT_ARGS
    except DeployInterrupted as e:
        print(f"error: {e}", file=sys.stderr)
        return exit_code_for(e)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return EXIT_LOCAL_IO
    except (ArgumentError, AuthError, PlanError, LocalIOError, OperationCancelled) as e:
        print(f"error: {e}", file=sys.stderr)
        return exit_code_for(e)
    except Exception as e:
        log.exception("unexpected failure")
        print(f"error: unexpected failure: {e}", file=sys.stderr)
        return EXIT_LOCAL_IO


if __name__ == "__main__":
    raise SystemExit(main())
