"""CLI entrypoints for tfsketch commands."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Dict

from .config import ConfigError, load_config
from .logging import configure_logging
from .pipeline import EXIT_CODES, EXIT_UNRESOLVED_STRICT, Phase, PipelineError, run_pipeline


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _add_flag(parser: argparse.ArgumentParser, *names: str, help: str) -> None:
    # None means "not given" so .tfsketch.yml values survive.
    parser.add_argument(*names, action="store_true", default=None, help=help)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tfsketch",
        description="Draw Terraform resources and the modules that create them as a Mermaid flowchart.",
    )
    _add_verbose_option(parser)
    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_parser = subparsers.add_parser(
        "gen",
        help="Scan a Terraform directory and generate a diagram.",
    )
    _add_verbose_option(gen_parser, suppress_default=True)
    gen_parser.add_argument("path", help="Directory with Terraform code.")
    gen_parser.add_argument("output", help="Output file for the Mermaid diagram.")
    gen_parser.add_argument(
        "-t",
        "--type-regexp",
        help="Regular expression a resource type must match to be drawn.",
    )
    gen_parser.add_argument(
        "-n",
        "--name-regexp",
        help="Regular expression a resource name must match to be drawn.",
    )
    gen_parser.add_argument(
        "--include-path",
        help="Regular expression a sub-directory path must match to be scanned.",
    )
    gen_parser.add_argument(
        "--exclude-path",
        help="Regular expression for sub-directory paths to skip.",
    )
    gen_parser.add_argument(
        "-a",
        "--display-attributes",
        help="Comma-separated attributes tried in order for the resource display name.",
    )
    gen_parser.add_argument(
        "-o",
        "--overrides",
        help="YAML file mapping external modules to local paths or fetch sources.",
    )
    gen_parser.add_argument(
        "-c",
        "--cache-dir",
        help="Directory where external modules are downloaded.",
    )
    gen_parser.add_argument(
        "--max-iterations",
        type=int,
        help="Maximum passes for resolving external modules (default 10).",
    )
    gen_parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug logging.",
    )
    _add_flag(gen_parser, "-r", "--only-root", help="Draw only the root path.")
    _add_flag(
        gen_parser,
        "-f",
        "--include-filenames",
        help="Include source file names in resource and module labels.",
    )
    _add_flag(gen_parser, "-s", "--minify", help="Minify element ids in the chart to save space.")
    _add_flag(
        gen_parser,
        "-m",
        "--module",
        help="Treat the path as a module and draw its 'modules' sub-directories.",
    )
    _add_flag(
        gen_parser,
        "--strict",
        help="Exit with an error when module references stay unresolved.",
    )

    return parser


def _config_values(args: argparse.Namespace) -> Dict[str, Any]:
    display = None
    if args.display_attributes:
        display = [item.strip() for item in args.display_attributes.split(",") if item.strip()]
    return {
        "display_attributes": display or None,
        "type_regexp": args.type_regexp,
        "name_regexp": args.name_regexp,
        "include_path": args.include_path,
        "exclude_path": args.exclude_path,
        "overrides": Path(args.overrides).expanduser().resolve() if args.overrides else None,
        "cache_dir": Path(args.cache_dir).expanduser().resolve() if args.cache_dir else None,
        "max_iterations": args.max_iterations,
        "strict": args.strict,
        "only_root": args.only_root,
        "include_filenames": args.include_filenames,
        "minify": args.minify,
        "module_dirs": args.module,
    }


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for tfsketch commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    verbose = bool(getattr(args, "verbose", False)) or bool(getattr(args, "debug", False))
    configure_logging(verbose=verbose)

    if args.command == "gen":
        path = Path(args.path).expanduser()
        if not path.is_dir():
            parser.exit(EXIT_CODES[Phase.WALK], f"Terraform path is not a directory: {path}\n")
        if args.max_iterations is not None and args.max_iterations < 1:
            parser.exit(EXIT_CODES[Phase.CONFIG], "--max-iterations must be at least 1\n")
        try:
            config = load_config(path)
        except ConfigError as exc:
            parser.exit(EXIT_CODES[Phase.CONFIG], f"{exc}\n")
        config = config.with_overrides(_config_values(args))

        output = Path(args.output).expanduser()
        try:
            result = run_pipeline(config, output)
        except PipelineError as exc:
            parser.exit(
                exc.exit_code,
                f"tfsketch gen failed: {exc}\nRun with --verbose for more details.\n",
            )
        if config.strict and result.unresolved_count:
            parser.exit(
                EXIT_UNRESOLVED_STRICT,
                f"{result.unresolved_count} module reference(s) could not be resolved\n",
            )
        print(f"Chart written to {_relativize(output)}")
    else:  # pragma: no cover - argparse enforces choices
        parser.exit(1, "Unknown command\n")


def _relativize(path: Path) -> str:
    try:
        return str(path.resolve().relative_to(Path.cwd()))
    except ValueError:
        return str(path)


if __name__ == "__main__":
    main(sys.argv[1:])
