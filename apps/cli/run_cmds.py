from __future__ import annotations

import sys
from pathlib import Path

from apps.cli.output import TokenPrinter, status
from kvsnap.engine.adapters.reference import write_random_model
from kvsnap.engine.errors import HARNESS_ERRORS, error_phase
from kvsnap.engine.harness import ContinuationHarness
from kvsnap.engine.registry import engine_factory
from kvsnap.engine.types import EngineParams, SamplingParams


def init_model(
    *,
    path: str,
    seed: int,
    n_embd: int,
    n_head: int,
    n_layer: int,
    n_ff: int,
    n_ctx_train: int,
) -> int:
    try:
        model = write_random_model(
            path,
            seed=seed,
            n_embd=n_embd,
            n_head=n_head,
            n_layer=n_layer,
            n_ff=n_ff,
            n_ctx_train=n_ctx_train,
        )
    except (OSError, ValueError) as exc:
        print(f"error: failed to write model: {exc}", file=sys.stderr)
        return 1
    hp = model.hparams
    status(
        "init-model",
        f"wrote {path} (n_vocab={hp.n_vocab} n_embd={hp.n_embd} n_head={hp.n_head} "
        f"n_layer={hp.n_layer} n_ctx_train={hp.n_ctx_train} seed={seed})",
    )
    return 0


def run_save_load_state(
    *,
    model: str,
    prompt: str,
    n_predict: int,
    engine_params: EngineParams,
    sampling: SamplingParams,
    state_file: str,
    baseline: bool = False,
    family: str = "reference",
) -> int:
    """Generate, checkpoint, recreate, restore and generate again; compare runs."""
    if not Path(model).is_file():
        print(f"error: model file not found: {model}", file=sys.stderr)
        return 1

    factory = engine_factory(family, model, engine_params)
    status(
        "run",
        f"model={model!r} n_ctx={engine_params.n_ctx} seed={engine_params.seed} "
        f"threads={engine_params.n_threads} n_predict={n_predict} state_file={state_file!r}",
    )

    printer = TokenPrinter()
    harness = ContinuationHarness(factory, sampling=sampling, state_path=state_file, on_token=printer)

    printer.write("\n" + prompt)
    try:
        result = harness.run(prompt, n_predict)
    except HARNESS_ERRORS as exc:
        printer.write("\n")
        print(f"error [{error_phase(exc)}]: {exc}", file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        printer.write("\n")
        print(f"error: {exc}", file=sys.stderr)
        return 1
    printer.end_run()

    status("run", f"checkpoint n_past={result.checkpoint.n_past} state_size={result.checkpoint.state.size}")
    if not result.matches:
        status("run", f"restored run diverged at token {result.first_divergence}")
        return 1
    status("run", f"restored run matches ({len(result.second)} tokens)")

    if baseline:
        try:
            b0 = ContinuationHarness(factory, sampling=sampling, state_path=state_file).run_baseline(
                prompt, n_predict
            )
        except HARNESS_ERRORS as exc:
            print(f"error [{error_phase(exc)}]: {exc}", file=sys.stderr)
            return 1
        if b0 != result.first:
            status("run", "baseline differs from the checkpointed run")
            return 1
        status("run", "baseline matches")
    return 0
