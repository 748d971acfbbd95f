import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from dashpack.configs import settings
from dashpack.dasher import Dasher
from dashpack.params import ConfigurationError, load_job, parse_args
from dashpack.remuxer.box_editor import FormatError, format_box_tree, parse_boxes, remove_box
from dashpack.tools import ExternalProcessError

logger = logging.getLogger(__name__)

# Parameter values not written to the log
_SECRET_PARAMS = ("drm.key",)


def setup_logging(logfile: Optional[Path] = None) -> None:
    logging.basicConfig(level=settings.log_level, format=settings.log_format)
    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(logfile, encoding="utf-8")
        handler.setFormatter(logging.Formatter(settings.log_format))
        logging.getLogger().addHandler(handler)


def dash(params_args: list[str]) -> int:
    try:
        params = parse_args(params_args)
        job = load_job(params)
    except ConfigurationError as e:
        setup_logging()
        logger.error("Invalid parameters: %s", e)
        return 2

    setup_logging(job.logfile)
    logger.info("Parameters:")
    for key in sorted(params):
        logger.info("%s=%s", key, "***" if key in _SECRET_PARAMS else params[key])

    try:
        Dasher(job).run()
    except ExternalProcessError as e:
        logger.error("Dashing aborted: %s", e)
        return 1
    return 0


def strip_box(input_file: Path, output_file: Path, box_path: str) -> int:
    setup_logging()
    try:
        removed = remove_box(input_file, output_file, box_path)
    except (FormatError, ValueError) as e:
        logger.error("Cannot remove %s: %s", box_path, e)
        return 1
    print(f"{'Removed' if removed else 'No match for'} {box_path}: {input_file} -> {output_file}")
    return 0


def print_boxes(input_file: Path) -> int:
    try:
        boxes = parse_boxes(input_file.read_bytes())
    except (OSError, FormatError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(format_box_tree(boxes))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    arg_parser = argparse.ArgumentParser(prog="dashpack", description="Package renditions into DRM protected DASH.")
    commands = arg_parser.add_subparsers(dest="command", required=True)

    dash_parser = commands.add_parser("dash", help="Transcode, dash and encrypt an input file")
    dash_parser.add_argument(
        "params", nargs="*", help="key=value parameters, e.g. config=dasher.properties input=file.mp4 output=out/"
    )

    strip_parser = commands.add_parser("strip-box", help="Remove boxes from an MP4 file")
    strip_parser.add_argument("input", type=Path, help="Path to the input MP4 file")
    strip_parser.add_argument("output", type=Path, help="Path to the output file, may equal input")
    strip_parser.add_argument("path", help="Box path, e.g. moov/pssh[*] or moov/trak/senc")

    boxes_parser = commands.add_parser("boxes", help="Print the box tree of an MP4 file")
    boxes_parser.add_argument("input", type=Path, help="Path to the MP4 file")

    args = arg_parser.parse_args(argv)
    if args.command == "dash":
        return dash(args.params)
    if args.command == "strip-box":
        return strip_box(args.input, args.output, args.path)
    return print_boxes(args.input)


if __name__ == "__main__":
    sys.exit(main())
