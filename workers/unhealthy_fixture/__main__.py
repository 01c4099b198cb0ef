"""
python -m unhealthy_fixture {loop,probe,dockerfile}
"""
import argparse
import logging
import sys
from pathlib import Path

from unhealthy_fixture import MARKER_PATH
from unhealthy_fixture.fixture import FIXTURE_PARAMS, probe, render_dockerfile, run_loop


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="unhealthy_fixture")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_loop = sub.add_parser("loop", help="Main process: log to stderr forever")
    p_loop.add_argument("--period", type=float, default=FIXTURE_PARAMS.interval_s)

    p_probe = sub.add_parser("probe", help="Health probe (inverted)")
    p_probe.add_argument("--marker", default=MARKER_PATH)

    p_docker = sub.add_parser("dockerfile", help="Print or write the fixture Dockerfile")
    p_docker.add_argument("--out", default=None)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    if args.cmd == "loop":
        run_loop(period_s=args.period)
        return 0
    if args.cmd == "probe":
        return probe(Path(args.marker))

    text = render_dockerfile()
    if args.out:
        Path(args.out).write_text(text)
    else:
        sys.stdout.write(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
