"""CLI entry points for the probe service, the load measurer and report comparison."""

import argparse
import logging
import signal
import sys

from tunnel_bench.__version__ import __version__
from tunnel_bench.errors import TunnelBenchError
from tunnel_bench.measure import LoadMeasurer
from tunnel_bench.models import (
    DEFAULT_CONCURRENCY,
    DEFAULT_SIZE,
    DEFAULT_TIMEOUT,
    Endpoint,
    WarmupPolicy,
    WorkloadConfig,
)
from tunnel_bench.probe import (
    DEFAULT_BIND_ADDRESS,
    DEFAULT_BIND_PORT,
    DEFAULT_MAX_DATA_SIZE,
    DEFAULT_SSH_PORT,
    DEFAULT_USERNAME,
    ProbeConfig,
    ProbeService,
    parse_server_address,
)
from tunnel_bench.report import load_json, print_comparison, print_report, write_json
from tunnel_bench.target import Target
from tunnel_bench.units import parse_duration, parse_size

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("tunnel-bench")

EXIT_CONFIG_ERROR = 1
EXIT_NO_CONNECTION = 3


def _size(value):
    size = parse_size(value)
    if size is None:
        raise argparse.ArgumentTypeError(f"invalid size {value!r} (e.g. 10000000, 10mb, 64KiB)")
    return size


def _duration(value):
    seconds = parse_duration(value)
    if seconds is None:
        raise argparse.ArgumentTypeError(f"invalid duration {value!r} (e.g. 30s, 500ms, 2m)")
    return seconds


def _set_verbose(ssh=False):
    logging.getLogger("tunnel-bench").setLevel(logging.DEBUG)
    if ssh:
        logging.getLogger("paramiko").setLevel(logging.DEBUG)


# ---------------------------------------------------------------------------
# Probe service
# ---------------------------------------------------------------------------

def build_probe_parser():
    parser = argparse.ArgumentParser(
        prog="tunnel-bench-probe",
        description="Expose a minimal benchmark HTTP service through an SSH reverse tunnel",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tunnel-bench-probe -i ./test_data/ssh_key -p 13122 localhost
  tunnel-bench-probe -i ~/.ssh/id_ed25519 tunnel.example.com:2222
  tunnel-bench-probe -i key --listen-port 8080 localhost   # also serve locally on :8080
        """,
    )
    parser.add_argument("host", help="Tunnel server SSH address, HOST[:PORT]")
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_SSH_PORT,
                        help=f"SSH port when HOST has none (default: {DEFAULT_SSH_PORT})")
    parser.add_argument("-l", "--username", default=DEFAULT_USERNAME,
                        help=f"SSH login name (default: {DEFAULT_USERNAME})")
    parser.add_argument("-i", "--private-key", required=True, metavar="PATH", help="SSH private key file")
    parser.add_argument("-d", "--max-data-size", type=_size, default=DEFAULT_MAX_DATA_SIZE, metavar="SIZE",
                        help=f"Largest payload served or accepted (default: {DEFAULT_MAX_DATA_SIZE})")
    parser.add_argument("--listen-host", default="127.0.0.1", help="Local listen address (default: 127.0.0.1)")
    parser.add_argument("-L", "--listen-port", type=int, default=0,
                        help="Local listen port, 0 for any free port (default: 0)")
    parser.add_argument("--bind-address", default=DEFAULT_BIND_ADDRESS,
                        help=f"Forwarding address requested from the tunnel server (default: {DEFAULT_BIND_ADDRESS})")
    parser.add_argument("--bind-port", type=int, default=DEFAULT_BIND_PORT,
                        help=f"Forwarding port requested from the tunnel server (default: {DEFAULT_BIND_PORT})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def probe_main(argv=None):
    args = build_probe_parser().parse_args(argv)
    if args.verbose:
        _set_verbose(ssh=True)

    try:
        host, port = parse_server_address(args.host, default_port=args.port)
        config = ProbeConfig(
            host=host,
            port=port,
            username=args.username,
            private_key=args.private_key,
            listen_host=args.listen_host,
            listen_port=args.listen_port,
            bind_address=args.bind_address,
            bind_port=args.bind_port,
            max_data_size=args.max_data_size,
        )
        service = ProbeService(config)
    except TunnelBenchError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)

    signal.signal(signal.SIGTERM, lambda *_: service.stop())

    try:
        service.start()
        service.serve_forever()
    except TunnelBenchError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        service.close()


# ---------------------------------------------------------------------------
# Load measurer
# ---------------------------------------------------------------------------

def build_measure_parser():
    parser = argparse.ArgumentParser(
        prog="tunnel-bench-measure",
        description="Generate HTTPS load against a tunnel endpoint and report latency and throughput",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  tunnel-bench-measure --custom-ca-cert=./test_data/ca/rootCA.pem \\
      --host-ip=127.0.0.1:13133 https://measure.foobar.tld:13133
  tunnel-bench-measure -c 16 -t 30s --warmup 5s https://measure.example.com
  tunnel-bench-measure -e post -s 1mb -c 8 -n 500 --json sish.json --label sish https://...
        """,
    )
    parser.add_argument("base_url", help="Target URL; its hostname is used for TLS validation and Host")
    parser.add_argument("-e", "--endpoint", choices=[e.value for e in Endpoint], default=Endpoint.GET.value,
                        help="Probe endpoint to drive (default: get)")
    parser.add_argument("-s", "--size", type=_size, default=DEFAULT_SIZE, metavar="SIZE",
                        help=f"Payload size per request (default: {DEFAULT_SIZE})")
    parser.add_argument("-c", "--concurrency", type=int, default=DEFAULT_CONCURRENCY,
                        help=f"Number of concurrent workers (default: {DEFAULT_CONCURRENCY})")
    bound = parser.add_mutually_exclusive_group()
    bound.add_argument("-n", "--requests", type=int, metavar="N",
                       help="Stop after N measured requests (default: one per worker)")
    bound.add_argument("-t", "--duration", type=_duration, metavar="DURATION",
                       help="Keep issuing requests for DURATION (e.g. 30s, 2m)")
    parser.add_argument("--warmup", type=_duration, default=0.0, metavar="DURATION",
                        help="Warm-up period before measuring (default: none)")
    parser.add_argument("--warmup-policy", choices=[p.value for p in WarmupPolicy],
                        default=WarmupPolicy.DISCARD.value,
                        help="discard: drop warm-up samples; exclude: count them but keep them out of "
                             "latency and throughput (default: discard)")
    parser.add_argument("--timeout", type=_duration, default=DEFAULT_TIMEOUT, metavar="DURATION",
                        help=f"Per-request timeout (default: {DEFAULT_TIMEOUT:g}s)")
    parser.add_argument("--custom-ca-cert", metavar="PATH", help="PEM CA certificate trusted in addition to system roots")
    parser.add_argument("--ca-only", action="store_true", help="Trust only --custom-ca-cert, not the system roots")
    parser.add_argument("--host-ip", metavar="IP:PORT", help="Connect here instead of resolving the URL's hostname")
    parser.add_argument("--no-keepalive", action="store_true", help="Open a new connection for every request")
    parser.add_argument("--label", help="Name stored in the report (e.g. the tunnel server under test)")
    parser.add_argument("--json", metavar="PATH", help="Also write the report as JSON to PATH")
    parser.add_argument("--dashboard", action="store_true", help="Show a live dashboard while measuring")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def measure_main(argv=None):
    args = build_measure_parser().parse_args(argv)
    if args.verbose:
        _set_verbose()

    try:
        target = Target.from_url(
            args.base_url,
            host_ip=args.host_ip,
            ca_cert=args.custom_ca_cert,
            ca_only=args.ca_only,
        )
        workload = WorkloadConfig(
            endpoint=Endpoint(args.endpoint),
            size=args.size,
            concurrency=args.concurrency,
            requests=args.requests,
            duration=args.duration,
            warmup=args.warmup,
            warmup_policy=WarmupPolicy(args.warmup_policy),
            timeout=args.timeout,
            keepalive=not args.no_keepalive,
        )
        measurer = LoadMeasurer(target, workload, label=args.label)
    except TunnelBenchError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)

    if args.dashboard:
        from tunnel_bench.dashboard import run_dashboard
        report = run_dashboard(measurer)
        if report is None:
            logger.error("Benchmark did not produce a report.")
            sys.exit(EXIT_CONFIG_ERROR)
    else:
        report = measurer.run()

    print_report(report)
    if args.json:
        write_json(report, args.json)
        logger.info(f"Results saved to {args.json}")

    if report.total == 0:
        logger.error("No measured request was recorded; the run ended before measuring started.")
        sys.exit(EXIT_NO_CONNECTION)
    if report.responses == 0:
        logger.error("No request reached the target; check --host-ip and the tunnel server.")
        sys.exit(EXIT_NO_CONNECTION)


# ---------------------------------------------------------------------------
# Report comparison
# ---------------------------------------------------------------------------

def compare_main(argv=None):
    parser = argparse.ArgumentParser(
        prog="tunnel-bench-compare",
        description="Compare two reports written by tunnel-bench-measure --json",
    )
    parser.add_argument("baseline", help="Report JSON used as the reference")
    parser.add_argument("candidate", help="Report JSON compared against the reference")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    try:
        left = load_json(args.baseline)
        right = load_json(args.candidate)
    except TunnelBenchError as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    print_comparison(left, right)


if __name__ == "__main__":
    measure_main()
