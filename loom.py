import argparse
import asyncio
import logging
import sys
from pathlib import Path

from loom.loom_compiler import ScriptCompiler
from loom.loom_config import config_for
from loom.loom_datatypes import MissingIncludedFile
from loom.loom_includes import IncludeGraphResolver
from loom.loom_runtime import ScriptRunner
from loom.loom_serialize import serialize


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loom", description="Run a script with its dependencies bound.")
    parser.add_argument("script", help="root script file")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="arguments passed to the script as Args (loom options must come before SCRIPT)")
    parser.add_argument("--files", action="store_true", help="print every script file the root loads, then exit")
    parser.add_argument("--format", choices=("text", "json", "yaml"), default="text", help="output format for --files")
    parser.add_argument("--release", action="store_true", help="compile with release optimization")
    parser.add_argument("--config", help="configuration file (default: loom.toml/.yaml/.json next to the script)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output to stderr")
    return parser


def print_files(script: str, fmt: str, encoding: str):
    """Print the include graph of a script and exit non-zero on a missing file."""
    try:
        paths = IncludeGraphResolver(encoding=encoding).resolve(script)
    except MissingIncludedFile as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    if fmt == "text":
        for path in paths:
            print(path)
    else:
        print(serialize({"files": paths}, fmt=fmt).rstrip())


async def run_script_file(script: str, args, config, optimization=None):
    """Run a script file non-interactively and exit with appropriate status."""
    runner = ScriptRunner(ScriptCompiler(config=config))
    result = await runner.run_file(script, args=args, optimization=optimization)
    if result.status == 'error':
        print(result.format_error(), file=sys.stderr)
        raise SystemExit(1)
    if result.value is not None:
        print(repr(result.value))


async def main(argv=None):
    opts = build_parser().parse_args(argv)
    script_dir = str(Path(opts.script).resolve().parent)
    try:
        config = config_for(script_dir, opts.config)
    except (OSError, ValueError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        raise SystemExit(1)

    logging.basicConfig(
        level=logging.DEBUG if opts.verbose else getattr(logging, config.log_level.upper(), logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if opts.files:
        print_files(opts.script, opts.format, config.encoding)
        return
    await run_script_file(opts.script, opts.args, config, "release" if opts.release else None)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
