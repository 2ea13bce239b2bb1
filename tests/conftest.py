import os
import sys

import pytest


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.cli.main without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


# Small enough to evaluate a few hundred tokens in well under a second on CPU.
TINY_HPARAMS = {"n_embd": 16, "n_head": 2, "n_layer": 1, "n_ff": 32, "n_ctx_train": 512}


@pytest.fixture
def model_path(tmp_path):
    pytest.importorskip("torch", reason="torch not installed")
    from kvsnap.engine.adapters.reference import write_random_model

    path = tmp_path / "tiny.pt"
    write_random_model(path, seed=0, **TINY_HPARAMS)
    return str(path)
