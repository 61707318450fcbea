import sys
import time
import signal
import argparse
from typing import List, Optional

from nreplops.config import config, EXIT_OK, EXIT_FAILURE, EXIT_TIMEOUT
from nreplops.conn_expr import RouteSpec, parse_conn_expr
from nreplops.errors import DeadlineExceededError, NreplOpsError
from nreplops.nrepl import NreplSession, Operation, run_operations
from nreplops.outputs import OutputRouter, PIPE, open_outputs
from nreplops.port_file import route_from_port_file
from nreplops.routes import AliasLookup, connect
from nreplops.utils import log_debug


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nr",
        description="Non-interactive nREPL client for shell scripting and command-line",
    )
    parser.add_argument(
        "-p", "--port", "--host", dest="port", metavar="[[USER@]TUNNEL[:PORT]:][HOST:]PORTS",
        help="Connect to the nREPL server given by this connection expression",
    )
    parser.add_argument("--port-file", metavar="FILE", help="Read the connection expression from FILE")
    parser.add_argument(
        "--wait-port-file", type=float, metavar="SECONDS",
        help="Wait up to SECONDS for the port file to appear",
    )
    parser.add_argument("--ns", "--namespace", dest="ns", metavar="NAMESPACE", help="Evaluate within NAMESPACE")
    parser.add_argument(
        "-e", "--expr", dest="exprs", action="append", default=[], metavar="EXPRESSION",
        help="Evaluate EXPRESSION (repeatable, evaluated left to right)",
    )
    parser.add_argument(
        "-f", "--file", dest="files", action="append", default=[], metavar="FILE",
        help="Evaluate the content of FILE (repeatable, '-' reads stdin)",
    )
    parser.add_argument("--input", "--stdin", dest="stdin", metavar="FILE", help="Send FILE as the remote stdin ('-' for local stdin)")
    parser.add_argument("--out", metavar="FILE", help="Write remote stdout to FILE")
    parser.add_argument("--err", metavar="FILE", help="Write remote stderr to FILE")
    parser.add_argument("--results", metavar="FILE", help="Write result values to FILE")
    parser.add_argument("--no-out", action="store_true", help="Discard remote stdout")
    parser.add_argument("--no-err", action="store_true", help="Discard remote stderr")
    parser.add_argument("--no-results", action="store_true", help="Discard result values")
    parser.add_argument("--timeout", type=float, metavar="SECONDS", help="Abort with exit status 2 after SECONDS (overrides NR_TIMEOUT)")
    parser.add_argument("--stop-on-error", action="store_true", help="Skip the remaining inputs after a remote exception")
    parser.add_argument("--trace", metavar="FILE", help="Append a JSON-lines wire trace to FILE (overrides NR_TRACE)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print diagnostics to stderr")
    parser.add_argument("sources", nargs="*", metavar="FILE", help="Files to evaluate when no -e/-f is given")
    return parser


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as handle:
        return handle.read()


def load_operations(exprs: List[str], files: List[str], ns: Optional[str] = None) -> List[Operation]:
    if exprs:
        return [Operation(code=expr, ns=ns) for expr in exprs]
    if files:
        return [
            Operation(code=_read_text(path), ns=ns, file=None if path == "-" else path, line=1, column=1)
            for path in files
        ]
    if not sys.stdin.isatty():
        return [Operation(code=sys.stdin.read(), ns=ns)]
    return []


def _target(path: Optional[str], discard: bool) -> Optional[str]:
    if discard:
        return None
    return path or PIPE


def evaluate_all(
    spec: RouteSpec,
    operations: List[Operation],
    router: OutputRouter,
    deadline: Optional[float] = None,
    stdin_data: Optional[str] = None,
    stop_on_error: bool = False,
    aliases: Optional[AliasLookup] = None,
) -> List[Operation]:
    """Connect, open one session, run every operation and close again."""
    with connect(spec, aliases=aliases, deadline=deadline) as connection:
        session = NreplSession(
            connection,
            router,
            deadline=deadline,
            stdin_data=stdin_data,
            trace_path=config.TRACE_PATH,
        )
        with session:
            session.open()
            return run_operations(session, operations, stop_on_error=stop_on_error)


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr, flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args(argv)

    # Apply args over env vars
    if args.timeout is not None:
        config.TIMEOUT = args.timeout if args.timeout > 0 else None
    if args.trace:
        config.TRACE_PATH = args.trace
    if args.verbose:
        config.VERBOSE = True

    if args.exprs and args.files:
        parser.error("--expr conflicts with --file")
    files = args.files or args.sources
    if args.exprs and args.sources:
        parser.error("positional files conflict with --expr")
    if files.count("-") > 1:
        parser.error("stdin (-) can be read only once")
    code_from_stdin = "-" in files or not (args.exprs or files)
    if args.stdin == "-" and code_from_stdin:
        parser.error("local stdin cannot carry both the code and the remote input")

    deadline = time.monotonic() + config.TIMEOUT if config.TIMEOUT else None

    try:
        operations = load_operations(args.exprs, files, ns=args.ns)
        if not operations:
            parser.error("no input; use -e, -f or pipe the code to stdin")
        stdin_data = _read_text(args.stdin) if args.stdin else None

        if args.port:
            spec = parse_conn_expr(args.port)
        else:
            spec = route_from_port_file(args.port_file, args.wait_port_file)

        router = open_outputs(
            stdout_to=_target(args.out, args.no_out),
            stderr_to=_target(args.err, args.no_err),
            results_to=_target(args.results, args.no_results),
        )
        try:
            done = evaluate_all(
                spec,
                operations,
                router,
                deadline=deadline,
                stdin_data=stdin_data,
                stop_on_error=args.stop_on_error,
            )
        finally:
            router.close()
        failures = router.failures()
    except DeadlineExceededError as exc:
        _fail(str(exc))
        return EXIT_TIMEOUT
    except NreplOpsError as exc:
        _fail(str(exc))
        return EXIT_FAILURE
    except OSError as exc:
        _fail(str(exc))
        return EXIT_FAILURE

    for op in done:
        elapsed = (op.finished_at - op.started_at) if op.finished_at and op.started_at else 0.0
        log_debug(f"{op.op_id or '-'}: {op.status} ({elapsed:.3f}s)")
    if failures:
        _fail(f"output lost: {'; '.join(failures)}")
        return EXIT_FAILURE
    return EXIT_OK


def _on_sigterm(signum, frame) -> None:
    raise SystemExit(128 + signum)


def cli() -> None:
    # Unwind through the finally blocks so ssh tunnels are reaped.
    signal.signal(signal.SIGTERM, _on_sigterm)
    sys.exit(main())


if __name__ == "__main__":
    cli()
