"""Reference engine: a small deterministic CPU transformer with a static KV cache.

The model is deliberately tiny (byte-level vocabulary, a couple of layers) so
it loads instantly and runs anywhere torch does. What matters here is that its
mutable state has the same shape as a production engine's: a preallocated
attention cache, the logits of the last evaluated token and the RNG that drives
stochastic sampling.
"""

from __future__ import annotations

import math
import struct
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Sequence

import torch
import torch.nn.functional as F

from ...runtime import check_torch_required, configure_threads
from ..errors import EvaluateError, SizeMismatchError
from ..types import EngineParams
from .base import BaseEngine

MODEL_FORMAT = "kvsnap.reference.v1"

BOS_ID = 256
EOS_ID = 257

# Fixed RNG slot so the state size never depends on the generator's own encoding.
MAX_RNG_STATE = 64 * 1024

_U64 = struct.Struct("<Q")


# =============================================================================
# Model
# =============================================================================


@dataclass(frozen=True)
class ReferenceHParams:
    """Shape of a reference model. Stored inside the model file."""

    n_vocab: int = 258
    n_embd: int = 64
    n_head: int = 4
    n_layer: int = 2
    n_ff: int = 128
    n_ctx_train: int = 2048

    def validate(self) -> None:
        if self.n_vocab < EOS_ID + 1:
            raise ValueError(f"'n_vocab' must be >= {EOS_ID + 1} (byte vocabulary + BOS/EOS).")
        if self.n_embd <= 0 or self.n_head <= 0:
            raise ValueError("'n_embd' and 'n_head' must be > 0.")
        if self.n_embd % self.n_head != 0:
            raise ValueError("'n_embd' must be divisible by 'n_head'.")
        if self.n_layer <= 0:
            raise ValueError("'n_layer' must be > 0.")
        if self.n_ff <= 0:
            raise ValueError("'n_ff' must be > 0.")
        if self.n_ctx_train <= 0:
            raise ValueError("'n_ctx_train' must be > 0.")

    def weight_shapes(self) -> dict[str, tuple[int, ...]]:
        d = self.n_embd
        shapes: dict[str, tuple[int, ...]] = {
            "tok_embeddings": (self.n_vocab, d),
            "pos_embeddings": (self.n_ctx_train, d),
            "norm": (d,),
            "output": (self.n_vocab, d),
        }
        for il in range(self.n_layer):
            p = f"layers.{il}."
            shapes[p + "attn_norm"] = (d,)
            shapes[p + "wq"] = (d, d)
            shapes[p + "wk"] = (d, d)
            shapes[p + "wv"] = (d, d)
            shapes[p + "wo"] = (d, d)
            shapes[p + "ffn_norm"] = (d,)
            shapes[p + "w1"] = (self.n_ff, d)
            shapes[p + "w2"] = (d, self.n_ff)
        return shapes


@dataclass
class ReferenceModel:
    """Immutable-by-convention weights plus hyperparameters."""

    hparams: ReferenceHParams
    weights: dict[str, torch.Tensor]

    @classmethod
    def random(cls, hparams: ReferenceHParams | None = None, *, seed: int = 0) -> "ReferenceModel":
        """Build a model with seeded random weights."""
        hp = hparams or ReferenceHParams()
        hp.validate()

        g = torch.Generator(device="cpu")
        g.manual_seed(int(seed))

        weights: dict[str, torch.Tensor] = {}
        for name, shape in hp.weight_shapes().items():
            if name.endswith("norm"):
                weights[name] = torch.ones(shape, dtype=torch.float32)
            elif name == "tok_embeddings":
                weights[name] = torch.randn(shape, generator=g, dtype=torch.float32)
            elif name == "pos_embeddings":
                weights[name] = torch.randn(shape, generator=g, dtype=torch.float32) * 0.1
            else:
                fan_in = shape[-1]
                weights[name] = torch.randn(shape, generator=g, dtype=torch.float32) / math.sqrt(fan_in)

        return cls(hparams=hp, weights=weights)

    def save(self, path: str | Path) -> None:
        torch.save(
            {"format": MODEL_FORMAT, "hparams": asdict(self.hparams), "weights": dict(self.weights)},
            str(path),
        )

    @classmethod
    def load(cls, path: str | Path) -> "ReferenceModel":
        payload = torch.load(str(path), map_location="cpu", weights_only=True)
        if not isinstance(payload, dict):
            raise ValueError(f"Invalid model file {str(path)!r} (expected dict payload).")
        if payload.get("format") != MODEL_FORMAT:
            raise ValueError(f"Unsupported model format: {payload.get('format')!r}")

        raw_hp = payload.get("hparams")
        if not isinstance(raw_hp, dict):
            raise ValueError("Model file is missing 'hparams'.")
        try:
            hp = ReferenceHParams(**{k: int(v) for k, v in raw_hp.items()})
        except TypeError as exc:
            raise ValueError(f"Invalid hparams in model file: {exc}") from exc
        hp.validate()

        raw_weights = payload.get("weights")
        if not isinstance(raw_weights, dict):
            raise ValueError("Model file is missing 'weights'.")

        weights: dict[str, torch.Tensor] = {}
        for name, shape in hp.weight_shapes().items():
            t = raw_weights.get(name)
            if not isinstance(t, torch.Tensor):
                raise ValueError(f"Model file is missing tensor {name!r}")
            if tuple(t.shape) != shape:
                raise ValueError(f"Tensor {name!r} has shape {tuple(t.shape)}, expected {shape}")
            weights[name] = t.to(dtype=torch.float32).contiguous()

        return cls(hparams=hp, weights=weights)


def write_random_model(path: str | Path, *, seed: int = 0, **hparams: int) -> ReferenceModel:
    """Create a random reference model and save it to `path`."""
    model = ReferenceModel.random(ReferenceHParams(**hparams), seed=seed)
    model.save(path)
    return model


def _rms_norm(x: torch.Tensor, weight: torch.Tensor, eps: float = 1e-5) -> torch.Tensor:
    return x * torch.rsqrt(x.pow(2).mean(dim=-1, keepdim=True) + eps) * weight


# =============================================================================
# Engine
# =============================================================================


class ReferenceEngine(BaseEngine):
    """
    Engine over a `ReferenceModel`.

    All methods operate on Python lists of token IDs; logits are returned as
    float32 tensors. The attention cache is allocated once for `n_ctx` cells.

    State blob layout (little-endian headers):

        u64 rng_size | rng bytes (MAX_RNG_STATE, zero padded)
        u64 n_vocab  | logits (n_vocab x float32)
        u64 n_tokens | K cache | V cache  (n_layer x n_ctx x n_embd each)

    Example:
        >>> engine = ReferenceEngine.from_file("model.pt", EngineParams(n_ctx=256))
        >>> tokens = engine.tokenize("Hello")
        >>> engine.evaluate(tokens, n_past=0)
        >>> int(engine.logits().argmax())
    """

    family = "reference"

    def __init__(
        self,
        model: ReferenceModel,
        params: EngineParams | None = None,
        *,
        model_path: str | None = None,
    ) -> None:
        params = params or EngineParams()
        params.validate()
        hp = model.hparams
        if params.n_ctx > hp.n_ctx_train:
            raise ValueError(f"n_ctx={params.n_ctx} exceeds the model's n_ctx_train={hp.n_ctx_train}")

        check_torch_required()
        configure_threads(params.n_threads)

        self._model = model
        self._params = params
        self._model_path = model_path
        self._cache_dtype = torch.float16 if params.memory_f16 else torch.float32

        shape = (hp.n_layer, params.n_ctx, hp.n_embd)
        self._k_cache: torch.Tensor | None = torch.zeros(shape, dtype=self._cache_dtype)
        self._v_cache: torch.Tensor | None = torch.zeros(shape, dtype=self._cache_dtype)
        self._logits: torch.Tensor | None = torch.zeros(hp.n_vocab, dtype=torch.float32)
        self._n_tokens = 0

        self._rng = torch.Generator(device="cpu")
        self._rng.manual_seed(params.seed)
        self._closed = False

    @classmethod
    def from_file(cls, model_path: str, params: EngineParams) -> "ReferenceEngine":
        model = ReferenceModel.load(model_path)
        return cls(model, params, model_path=str(model_path))

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def n_vocab(self) -> int:
        return self._model.hparams.n_vocab

    @property
    def n_ctx(self) -> int:
        return self._params.n_ctx

    @property
    def n_tokens(self) -> int:
        """Cache cells filled so far (internal bookkeeping, part of the state)."""
        return self._n_tokens

    @property
    def params(self) -> EngineParams:
        return self._params

    @property
    def generator(self) -> torch.Generator:
        self._ensure_open()
        return self._rng

    @property
    def bos_token_id(self) -> int:
        return BOS_ID

    @property
    def eos_token_id(self) -> int:
        return EOS_ID

    @property
    def model_info(self) -> dict[str, Any]:
        hp = self._model.hparams
        return {
            "family": self.family,
            "model_path": self._model_path,
            "format": MODEL_FORMAT,
            "hparams": asdict(hp),
            "n_ctx": self._params.n_ctx,
            "cache_dtype": str(self._cache_dtype).replace("torch.", ""),
            "closed": self._closed,
        }

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def _kv_bytes(self) -> int:
        hp = self._model.hparams
        elem = torch.empty((), dtype=self._cache_dtype).element_size()
        return hp.n_layer * self._params.n_ctx * hp.n_embd * elem

    def _layout(self) -> dict[str, int]:
        rng_data = _U64.size
        logits_hdr = rng_data + MAX_RNG_STATE
        logits_data = logits_hdr + _U64.size
        kv_hdr = logits_data + 4 * self.n_vocab
        k_data = kv_hdr + _U64.size
        v_data = k_data + self._kv_bytes()
        end = v_data + self._kv_bytes()
        return {
            "rng_hdr": 0,
            "rng_data": rng_data,
            "logits_hdr": logits_hdr,
            "logits_data": logits_data,
            "kv_hdr": kv_hdr,
            "k_data": k_data,
            "v_data": v_data,
            "end": end,
        }

    def state_size(self) -> int:
        return self._layout()["end"]

    def copy_state_data(self, buffer: bytearray | memoryview) -> int:
        self._ensure_open()
        lay = self._layout()
        size = lay["end"]
        if memoryview(buffer).nbytes < size:
            raise ValueError(f"State buffer too small: {memoryview(buffer).nbytes} < {size}")

        out = torch.frombuffer(buffer, dtype=torch.uint8, count=size)

        rng_state = self._rng.get_state()
        rng_n = int(rng_state.numel())
        if rng_n > MAX_RNG_STATE:
            raise RuntimeError(f"RNG state ({rng_n} bytes) exceeds MAX_RNG_STATE={MAX_RNG_STATE}")
        _U64.pack_into(buffer, lay["rng_hdr"], rng_n)
        out[lay["rng_data"] : lay["logits_hdr"]].zero_()
        out[lay["rng_data"] : lay["rng_data"] + rng_n].copy_(rng_state)

        _U64.pack_into(buffer, lay["logits_hdr"], self.n_vocab)
        out[lay["logits_data"] : lay["kv_hdr"]].copy_(self._logits.contiguous().view(torch.uint8))

        _U64.pack_into(buffer, lay["kv_hdr"], self._n_tokens)
        out[lay["k_data"] : lay["v_data"]].copy_(self._k_cache.reshape(-1).view(torch.uint8))
        out[lay["v_data"] : lay["end"]].copy_(self._v_cache.reshape(-1).view(torch.uint8))

        return size

    def set_state_data(self, buffer: bytes | bytearray | memoryview) -> int:
        self._ensure_open()
        lay = self._layout()
        size = lay["end"]
        available = memoryview(buffer).nbytes
        if available < size:
            raise SizeMismatchError(size, available)

        # Validate every header before touching the live cache.
        (rng_n,) = _U64.unpack_from(buffer, lay["rng_hdr"])
        if rng_n <= 0 or rng_n > MAX_RNG_STATE:
            raise ValueError(f"Corrupt state: rng size {rng_n}")
        (logits_n,) = _U64.unpack_from(buffer, lay["logits_hdr"])
        if logits_n != self.n_vocab:
            raise SizeMismatchError(self.n_vocab, logits_n, what="logits")
        (n_tokens,) = _U64.unpack_from(buffer, lay["kv_hdr"])
        if n_tokens > self._params.n_ctx:
            raise ValueError(f"Corrupt state: kv token count {n_tokens} > n_ctx {self._params.n_ctx}")

        src = torch.frombuffer(bytearray(memoryview(buffer)[:size]), dtype=torch.uint8)

        rng_state = src[lay["rng_data"] : lay["rng_data"] + rng_n].clone()
        probe = torch.Generator(device="cpu")
        try:
            probe.set_state(rng_state)
        except RuntimeError as exc:
            raise ValueError(f"Corrupt state: invalid rng state ({exc})") from exc

        logits = src[lay["logits_data"] : lay["kv_hdr"]].clone().view(torch.float32)
        k = src[lay["k_data"] : lay["v_data"]].clone().view(self._cache_dtype).view(self._k_cache.shape)
        v = src[lay["v_data"] : lay["end"]].clone().view(self._cache_dtype).view(self._v_cache.shape)

        self._rng.set_state(rng_state)
        self._logits.copy_(logits)
        self._k_cache.copy_(k)
        self._v_cache.copy_(v)
        self._n_tokens = int(n_tokens)
        return size

    # -------------------------------------------------------------------------
    # Compute
    # -------------------------------------------------------------------------

    def evaluate(self, tokens: Sequence[int], n_past: int) -> None:
        self._ensure_open()
        ids = [int(t) for t in tokens]
        n = len(ids)
        if n == 0:
            raise EvaluateError("No tokens to evaluate.")
        if n_past < 0 or n_past > self._n_tokens:
            raise EvaluateError(
                f"n_past={n_past} is outside the filled cache (n_tokens={self._n_tokens})."
            )
        end = n_past + n
        if end > self._params.n_ctx:
            raise EvaluateError(f"Context window exceeded: {end} > n_ctx={self._params.n_ctx}")
        bad = [t for t in ids if t < 0 or t >= self.n_vocab]
        if bad:
            raise EvaluateError(f"Token ids out of range [0, {self.n_vocab}): {bad[:8]}")

        hp = self._model.hparams
        w = self._model.weights
        head_dim = hp.n_embd // hp.n_head
        scale = 1.0 / math.sqrt(head_dim)

        with torch.no_grad():
            idx = torch.tensor(ids, dtype=torch.long)
            pos = torch.arange(n_past, end, dtype=torch.long)
            # Query i (absolute position n_past + i) sees keys 0..n_past + i.
            blocked = torch.arange(end, dtype=torch.long)[None, :] > pos[:, None]

            x = w["tok_embeddings"][idx] + w["pos_embeddings"][pos]
            for il in range(hp.n_layer):
                p = f"layers.{il}."
                h = _rms_norm(x, w[p + "attn_norm"])
                q = h @ w[p + "wq"].T
                k = h @ w[p + "wk"].T
                v = h @ w[p + "wv"].T

                self._k_cache[il, n_past:end].copy_(k.to(self._cache_dtype))
                self._v_cache[il, n_past:end].copy_(v.to(self._cache_dtype))
                keys = self._k_cache[il, :end].to(torch.float32)
                values = self._v_cache[il, :end].to(torch.float32)

                qh = q.reshape(n, hp.n_head, head_dim).transpose(0, 1)
                kh = keys.reshape(end, hp.n_head, head_dim).transpose(0, 1)
                vh = values.reshape(end, hp.n_head, head_dim).transpose(0, 1)

                scores = (qh @ kh.transpose(1, 2)) * scale
                scores = scores.masked_fill(blocked, float("-inf"))
                attn = torch.softmax(scores, dim=-1) @ vh
                x = x + attn.transpose(0, 1).reshape(n, hp.n_embd) @ w[p + "wo"].T

                h = _rms_norm(x, w[p + "ffn_norm"])
                x = x + F.silu(h @ w[p + "w1"].T) @ w[p + "w2"].T

            x = _rms_norm(x, w["norm"])
            logits = x[-1] @ w["output"].T

        if not bool(torch.isfinite(logits).all()):
            raise EvaluateError(f"Non-finite logits at position {end - 1}.")

        self._logits.copy_(logits)
        self._n_tokens = end

    def logits(self) -> torch.Tensor:
        self._ensure_open()
        return self._logits.clone()

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def tokenize(self, text: str, add_bos: bool = True) -> list[int]:
        ids = [BOS_ID] if add_bos else []
        ids.extend(text.encode("utf-8"))
        return ids

    def token_to_bytes(self, token_id: int) -> bytes:
        token_id = int(token_id)
        if token_id < 0 or token_id >= self.n_vocab:
            raise ValueError(f"Token id out of range: {token_id}")
        if token_id < 256:
            return bytes([token_id])
        return b""

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        self._k_cache = None
        self._v_cache = None
        self._logits = None
        self._closed = True

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Engine has been closed.")
