"""hybridlm entry point: argument parsing, logging setup and a single-shot run."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from hybridlm.config import HybridLMConfig, load_config, save_execution_mode


def _get_version() -> str:
    """Return the installed package version, or fall back to 'unknown'."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return f"hybridlm {version('hybridlm')}"
    except PackageNotFoundError:
        return "hybridlm (unknown version, not installed as a package)"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hybridlm",
        description="Run a chat completion locally, remotely, or with fallback between the two",
    )
    parser.add_argument(
        "prompt", nargs="?", help="The user message (or the text to embed with --embed)"
    )
    parser.add_argument("--version", "-V", action="version", version=_get_version())
    parser.add_argument("--config", "-c", help="Path to config.toml file")
    parser.add_argument("--model", "-m", help="Path to a GGUF model file (overrides config)")
    parser.add_argument(
        "--mode",
        help="Execution mode: local, remote, local-first or remote-first (overrides config)",
    )
    parser.add_argument(
        "--save-mode",
        action="store_true",
        help="Save the execution mode (from --mode) to the user config file",
    )
    parser.add_argument("--system", "-s", help="System prompt")
    parser.add_argument("--n-predict", "-n", type=int, help="Maximum tokens to generate")
    parser.add_argument("--temperature", "-t", type=float, help="Sampling temperature")
    parser.add_argument("--image", action="append", default=[], help="Attach an image (repeatable)")
    parser.add_argument(
        "--embed", action="store_true", help="Print the embedding of PROMPT instead of completing"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write all log messages (DEBUG level) to a file.",
    )
    return parser


def _setup_logging(verbose: bool, log_file: str | None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logging.getLogger().addHandler(file_handler)
        logging.getLogger().setLevel(logging.DEBUG)


async def _run(args: argparse.Namespace, config: HybridLMConfig) -> int:
    from hybridlm.errors import HybridLMError
    from hybridlm.headless import run_embedding, run_headless
    from hybridlm.lm import HybridLM

    try:
        lm = await HybridLM.init(config)
    except HybridLMError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    async with lm:
        if args.embed:
            return await run_embedding(lm, args.prompt)

        params = lm.default_params()
        if args.n_predict is not None:
            params.n_predict = args.n_predict
        if args.temperature is not None:
            params.temperature = args.temperature
        params.images = list(args.image)
        return await run_headless(lm, args.prompt, system=args.system, params=params)


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if args.prompt is None and not args.save_mode:
        parser.error("a prompt is required")
    _setup_logging(args.verbose, args.log_file)

    config = load_config(args.config)
    if args.model:
        config.model.path = args.model
    if args.mode:
        config.engine.mode = args.mode
    if args.embed:
        config.model.embedding = True

    from hybridlm.agent.router import ExecutionMode
    from hybridlm.errors import InvalidModeError

    try:
        ExecutionMode.parse(config.engine.mode)
    except InvalidModeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.save_mode:
        path = save_execution_mode(config.engine.mode)
        print(f'Execution mode "{config.engine.mode}" saved to {path}', file=sys.stderr)
        if args.prompt is None:
            sys.exit(0)

    sys.exit(asyncio.run(_run(args, config)))


if __name__ == "__main__":
    main()
