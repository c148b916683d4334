"""CLI entrypoint: sort miniSEED records into time order and replay them as a stream."""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
import sys
from typing import NoReturn

from dotenv import load_dotenv

from datalink_client import parse_address
from delivery import deliver
from filters import load_patterns
from hptime import parse_time_string
from indexer import read_files
from models import DeliveryOptions, FilterConfig
from mseed_reader import MAX_RECORD_LENGTH
from sinks import open_sinks
from sorter import sort_by_end_time
from sources import SourceCatalog

PACKAGE = "mseedrtstream"
VERSION = "0.3"


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"ERROR: {message}\n")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = _ArgumentParser(
        prog=PACKAGE,
        description="Create simulated real-time stream of miniSEED",
        epilog=(
            "time format: 'YYYY[,DDD,HH,MM,SS,FFFFFF]' (delimiters: , : .) or "
            "'YYYY-MM-DDTHH:MM:SS.FFFFFF'. Regular expressions are applied to "
            "'NET_STA_LOC_CHAN_QUAL'; prefix with @ to read one per line from a file."
        ),
    )
    parser.add_argument("-V", action="version", version=f"{PACKAGE} version: {VERSION}", help="Report program version")
    parser.add_argument("-v", dest="verbose", action="count", default=0, help="Be more verbose, multiple flags can be used")
    parser.add_argument("-sum", dest="summary", action="store_true", help="Print a basic summary after reading all input files")
    parser.add_argument("-ts", dest="start_time", metavar="time", help="Limit to records that contain or start after time")
    parser.add_argument("-te", dest="end_time", metavar="time", help="Limit to records that contain or end before time")
    parser.add_argument("-M", dest="match", metavar="match", help="Limit to records matching the regular expression")
    parser.add_argument("-R", dest="reject", metavar="reject", help="Limit to records not matching the regular expression")
    parser.add_argument("-sd", dest="stream_delay", action="store_true", help="Delay output of data to simulate real time flow")
    parser.add_argument(
        "-df",
        dest="delay_factor",
        metavar="factor",
        type=float,
        default=None,
        help="Delay factor, to retard or accelerate simulated time, default 1 (implies -sd)",
    )
    parser.add_argument("-o", dest="output", metavar="file", help="Specify an output file, '-' for standard output")
    parser.add_argument("-dl", dest="datalink", metavar="server", help="Specify a DataLink server destination in host:port format")
    parser.add_argument("files", nargs="*", metavar="file", help="File(s) of miniSEED records, or @listfile")
    return parser.parse_args(argv)


def build_filter_config(args: argparse.Namespace) -> FilterConfig:
    """Turn time and pattern options into a FilterConfig; raises ValueError on bad input."""
    return FilterConfig(
        start_time=parse_time_string(args.start_time) if args.start_time else None,
        end_time=parse_time_string(args.end_time) if args.end_time else None,
        match_patterns=load_patterns(args.match) if args.match else (),
        reject_patterns=load_patterns(args.reject) if args.reject else (),
    )


def build_delivery_options(args: argparse.Namespace) -> DeliveryOptions:
    stream_delay = args.stream_delay or args.delay_factor is not None
    delay_factor = 1.0 if args.delay_factor is None else args.delay_factor
    if not (math.isfinite(delay_factor) and delay_factor > 0):
        raise ValueError(f"Delay factor must be a finite number greater than 0, got {delay_factor}")
    return DeliveryOptions(
        stream_delay=stream_delay,
        delay_factor=delay_factor,
        max_record_length=MAX_RECORD_LENGTH,
    )


def build_catalog(arguments: list[str]) -> SourceCatalog:
    catalog = SourceCatalog()
    for argument in arguments:
        catalog.add_argument(argument)
    return catalog


async def run(
    catalog: SourceCatalog,
    config: FilterConfig,
    options: DeliveryOptions,
    output_file: str | None,
    datalink_address: str | None,
    summary: bool = False,
) -> None:
    """Index, sort and deliver; raises RuntimeError on any fatal condition."""
    logging.debug("Reading input files")
    index, totals = await read_files(catalog, config, max_record_length=options.max_record_length)

    if summary:
        print(f"Files: {totals.files}, Records: {totals.records}, Samples: {totals.samples}", file=sys.stderr)

    logging.debug("Sorting record list")
    sort_by_end_time(index)

    sinks = await open_sinks(output_file, datalink_address)
    await deliver(index, catalog, sinks, options)


def configure_logging(verbose: int) -> None:
    if verbose >= 2:
        level = logging.DEBUG
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s", stream=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    """Parse options, run the pipeline and return the process exit status."""
    load_dotenv()
    args = parse_args(argv)
    configure_logging(args.verbose)
    logging.info("%s version: %s", PACKAGE, VERSION)

    try:
        config = build_filter_config(args)
        options = build_delivery_options(args)
        catalog = build_catalog(args.files)
        if args.datalink:
            parse_address(args.datalink)
    except (ValueError, RuntimeError) as exc:
        logging.error("%s", exc)
        return 1

    if not len(catalog):
        logging.error("No input files were specified; try %s -h for usage", PACKAGE)
        return 1

    if not args.output and not args.datalink:
        logging.error("No output file or server was specified; try %s -h for usage", PACKAGE)
        return 1

    try:
        asyncio.run(run(catalog, config, options, args.output, args.datalink, summary=args.summary))
    except (RuntimeError, ValueError) as exc:
        logging.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logging.error("Interrupted, stopping delivery")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
