"""`kvsnap` - engine state snapshot/restore CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from apps.cli.checkpoint_cmds import (
    CheckpointCommandError,
    checkpoint_edit,
    checkpoint_ls,
    checkpoint_resume,
    checkpoint_rm,
    checkpoint_save,
)
from apps.cli.run_cmds import init_model, run_save_load_state
from kvsnap.engine.adapters.reference import ReferenceHParams
from kvsnap.engine.registry import list_engine_families
from kvsnap.engine.types import EngineParams, SamplingParams
from kvsnap.runtime import describe_runtime

DEFAULT_PROMPT = "The quick brown fox"
DEFAULT_STATE_FILE = "dump_state.bin"


def _add_engine_args(p: argparse.ArgumentParser, *, model_required: bool = True) -> None:
    defaults = EngineParams()
    p.add_argument("--model", "-m", required=model_required, help="Path to a model file (see `kvsnap init-model`)")
    p.add_argument(
        "--family",
        default="reference",
        choices=list_engine_families(),
        help="Engine family (default: %(default)s)",
    )
    p.add_argument("--seed", "-s", type=int, default=defaults.seed, help="RNG seed (default: %(default)s)")
    p.add_argument(
        "--ctx-size",
        "-c",
        type=int,
        default=defaults.n_ctx,
        help="Context length in tokens (default: %(default)s)",
    )
    p.add_argument(
        "--threads",
        "-t",
        type=int,
        default=defaults.n_threads,
        help="Compute threads (default: %(default)s)",
    )
    p.add_argument(
        "--memory-f32",
        action="store_true",
        help="Keep the attention cache in float32 instead of float16",
    )


def _add_sampling_args(p: argparse.ArgumentParser) -> None:
    defaults = SamplingParams()
    p.add_argument(
        "--temp",
        type=float,
        default=defaults.temperature,
        help="Sampling temperature; 0 selects greedily (default: %(default)s)",
    )
    p.add_argument("--top-k", type=int, default=defaults.top_k, help="Top-k cutoff, 0 = off (default: %(default)s)")
    p.add_argument("--top-p", type=float, default=defaults.top_p, help="Nucleus cutoff (default: %(default)s)")
    p.add_argument(
        "--repeat-last-n",
        type=int,
        default=defaults.repeat_last_n,
        help="Token history window (default: %(default)s)",
    )
    p.add_argument(
        "--repeat-penalty",
        type=float,
        default=defaults.repeat_penalty,
        help="Repetition penalty over the history window, 1.0 = off (default: %(default)s)",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kvsnap", description="Engine state snapshot/restore CLI")
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging on stderr")

    sub = p.add_subparsers(dest="command")

    hp = ReferenceHParams()
    init_p = sub.add_parser("init-model", help="Write a randomly initialized reference model")
    init_p.add_argument("path", help="Output model file")
    init_p.add_argument("--seed", type=int, default=0, help="Weight init seed (default: %(default)s)")
    init_p.add_argument("--n-embd", type=int, default=hp.n_embd, help="Embedding width (default: %(default)s)")
    init_p.add_argument("--n-head", type=int, default=hp.n_head, help="Attention heads (default: %(default)s)")
    init_p.add_argument("--n-layer", type=int, default=hp.n_layer, help="Transformer layers (default: %(default)s)")
    init_p.add_argument("--n-ff", type=int, default=hp.n_ff, help="Feed-forward width (default: %(default)s)")
    init_p.add_argument(
        "--n-ctx-train",
        type=int,
        default=hp.n_ctx_train,
        help="Maximum context length (default: %(default)s)",
    )

    run_p = sub.add_parser("run", help="Generate, snapshot, recreate, restore and compare")
    _add_engine_args(run_p)
    _add_sampling_args(run_p)
    run_p.add_argument("--prompt", "-p", default=DEFAULT_PROMPT, help="Prompt text (default: %(default)r)")
    run_p.add_argument("--n-predict", "-n", type=int, default=16, help="Tokens per run (default: %(default)s)")
    run_p.add_argument(
        "--state-file",
        default=DEFAULT_STATE_FILE,
        help="Where the engine state is persisted between runs (default: %(default)s)",
    )
    run_p.add_argument(
        "--baseline",
        action="store_true",
        help="Also generate once without any checkpoint and compare with the first run",
    )

    ckpt = sub.add_parser("checkpoint", help="Manage stored checkpoints")
    ckpt.add_argument("--store-dir", help="Checkpoint store root (default: $KVSNAP_CACHE_DIR or XDG cache)")
    ckpt_sub = ckpt.add_subparsers(dest="checkpoint_cmd")

    ckpt_save_p = ckpt_sub.add_parser("save", help="Evaluate a prompt and store a checkpoint")
    _add_engine_args(ckpt_save_p)
    _add_sampling_args(ckpt_save_p)
    ckpt_save_p.add_argument("--prompt", "-p", default=DEFAULT_PROMPT, help="Prompt text (default: %(default)r)")
    ckpt_save_p.add_argument("--title", help="Checkpoint title")
    ckpt_save_p.add_argument("--json", action="store_true", help="Print the manifest as JSON")

    ckpt_resume_p = ckpt_sub.add_parser("resume", help="Restore a checkpoint and continue generating")
    ckpt_resume_p.add_argument("checkpoint_id", help="Checkpoint ID")
    _add_engine_args(ckpt_resume_p)
    _add_sampling_args(ckpt_resume_p)
    ckpt_resume_p.add_argument("--n-predict", "-n", type=int, default=16, help="Tokens to generate (default: %(default)s)")

    ckpt_edit_p = ckpt_sub.add_parser("edit", help="Change a checkpoint's title, description or tags")
    ckpt_edit_p.add_argument("checkpoint_id", help="Checkpoint ID")
    _add_engine_args(ckpt_edit_p)
    ckpt_edit_p.add_argument("--title", help="New title")
    ckpt_edit_p.add_argument("--description", help="New description")
    ckpt_edit_p.add_argument("--tag", action="append", dest="tags", help="Tag (repeatable; replaces existing tags)")
    ckpt_edit_p.add_argument("--json", action="store_true", help="Print the updated manifest as JSON")

    ckpt_ls_p = ckpt_sub.add_parser("ls", help="List checkpoints")
    _add_engine_args(ckpt_ls_p, model_required=False)
    ckpt_ls_p.add_argument("--json", action="store_true", help="Print JSON")

    ckpt_rm_p = ckpt_sub.add_parser("rm", help="Delete checkpoint(s)")
    ckpt_rm_p.add_argument("checkpoint_ids", nargs="+", help="Checkpoint IDs")
    _add_engine_args(ckpt_rm_p, model_required=False)

    return p


def _engine_params(args: argparse.Namespace) -> EngineParams:
    return EngineParams().merged(
        {
            "n_ctx": args.ctx_size,
            "seed": args.seed,
            "n_threads": args.threads,
            "memory_f16": not bool(args.memory_f32),
        }
    )


def _sampling_params(args: argparse.Namespace) -> SamplingParams:
    return SamplingParams().merged(
        {
            "temperature": args.temp,
            "top_k": args.top_k,
            "top_p": args.top_p,
            "repeat_last_n": args.repeat_last_n,
            "repeat_penalty": args.repeat_penalty,
        }
    )


def _configure_logging(verbose: bool) -> None:
    if not verbose:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger(__name__).debug("runtime: %s", describe_runtime())


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))
    _configure_logging(bool(args.verbose))

    command = args.command
    if command is None:
        parser.print_help()
        return 2

    if command == "init-model":
        return init_model(
            path=args.path,
            seed=args.seed,
            n_embd=args.n_embd,
            n_head=args.n_head,
            n_layer=args.n_layer,
            n_ff=args.n_ff,
            n_ctx_train=args.n_ctx_train,
        )

    engine_params = sampling = None
    if command in {"run", "checkpoint"} and hasattr(args, "model"):
        try:
            engine_params = _engine_params(args)
            if hasattr(args, "temp"):
                sampling = _sampling_params(args)
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2
        if getattr(args, "n_predict", 0) < 0:
            print("error: '--n-predict' must be >= 0.", file=sys.stderr)
            return 2

    if command == "run":
        return run_save_load_state(
            model=args.model,
            prompt=args.prompt,
            n_predict=args.n_predict,
            engine_params=engine_params,
            sampling=sampling,
            state_file=args.state_file,
            baseline=bool(args.baseline),
            family=args.family,
        )

    if command == "checkpoint":
        try:
            if args.checkpoint_cmd == "save":
                return checkpoint_save(
                    model=args.model,
                    prompt=args.prompt,
                    engine_params=engine_params,
                    sampling=sampling,
                    title=args.title,
                    store_dir=args.store_dir,
                    json_output=bool(args.json),
                    family=args.family,
                )
            if args.checkpoint_cmd == "resume":
                return checkpoint_resume(
                    checkpoint_id=args.checkpoint_id,
                    model=args.model,
                    n_predict=args.n_predict,
                    engine_params=engine_params,
                    sampling=sampling,
                    store_dir=args.store_dir,
                    family=args.family,
                )
            if args.checkpoint_cmd == "edit":
                return checkpoint_edit(
                    checkpoint_id=args.checkpoint_id,
                    model=args.model,
                    engine_params=engine_params,
                    title=args.title,
                    description=args.description,
                    tags=args.tags,
                    store_dir=args.store_dir,
                    json_output=bool(args.json),
                    family=args.family,
                )
            if args.checkpoint_cmd is None:
                return checkpoint_ls(store_dir=args.store_dir)
            if args.checkpoint_cmd == "ls":
                return checkpoint_ls(
                    store_dir=args.store_dir,
                    json_output=bool(args.json),
                    model=args.model,
                    engine_params=engine_params,
                    family=args.family,
                )
            if args.checkpoint_cmd == "rm":
                return checkpoint_rm(
                    checkpoint_ids=args.checkpoint_ids,
                    store_dir=args.store_dir,
                    model=args.model,
                    engine_params=engine_params,
                    family=args.family,
                )
            parser.error(f"Unknown checkpoint subcommand: {args.checkpoint_cmd!r}")
            return 2
        except CheckpointCommandError as exc:
            print(str(exc), file=sys.stderr)
            return 1

    parser.error(f"Unknown command: {command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
