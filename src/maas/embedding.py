"""
Embedding provider adapters.

Converts text into a fixed-length dense vector. Two providers:
- OpenAI embeddings API (default, text-embedding-ada-002, 1536 dims)
- Local sentence-transformers model (BGE / MiniLM presets)

Input longer than MAX_INPUT_CHARS is truncated silently before submission.
Every provider failure surfaces as EmbeddingProviderError; nothing here
retries on its own beyond the bounded retry count handed to the SDK.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Literal, Optional, Protocol

import numpy as np
import openai

from .errors import EmbeddingProviderError, EmbeddingTimeoutError

if TYPE_CHECKING:
    from .config import MemoryConfig

logger = logging.getLogger(__name__)

DEFAULT_DIM = 1536
MAX_INPUT_CHARS = 8000
DEFAULT_OPENAI_MODEL = "text-embedding-ada-002"
PROVIDERS = {"openai", "local"}

# Local model presets
MODEL_CONFIGS = {
    "bge-m3": {
        "name": "BAAI/bge-m3",
        "max_dim": 1024,
    },
    "bge-small-en": {
        "name": "BAAI/bge-small-en-v1.5",
        "max_dim": 384,
    },
    "minilm": {
        "name": "sentence-transformers/all-MiniLM-L6-v2",
        "max_dim": 384,
    },
}

DEFAULT_MODEL_KEY = "bge-m3"
FALLBACK_MODEL_KEY = "minilm"


class EmbeddingProvider(Protocol):
    """Anything that turns text into a vector of exactly `dimension` floats."""

    dimension: int

    def embed(self, text: str) -> np.ndarray: ...

    def warmup(self) -> None: ...

    def get_info(self) -> dict: ...


def truncate_text(text: str, max_chars: int = MAX_INPUT_CHARS) -> str:
    """Cut text to the provider input limit."""
    return text if len(text) <= max_chars else text[:max_chars]


def fit_dimension(embeddings: np.ndarray, dimension: int, normalize: bool = True) -> np.ndarray:
    """
    Bring a (n, d) batch of embeddings to exactly `dimension` columns.

    Wider vectors are Matryoshka-truncated and re-normalized. Narrower
    vectors are zero-padded, which leaves cosine similarity unchanged.
    """
    width = embeddings.shape[1]
    if width > dimension:
        embeddings = embeddings[:, :dimension]
        if normalize:
            norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
            embeddings = embeddings / np.maximum(norms, 1e-10)
    elif width < dimension:
        pad = np.zeros((embeddings.shape[0], dimension - width), dtype=embeddings.dtype)
        embeddings = np.hstack([embeddings, pad])
    return embeddings.astype(np.float32)


class OpenAIEmbeddingEngine:
    """
    Embedding provider backed by the OpenAI embeddings API.

    The SDK client is built once and reused for every call. `timeout`
    bounds each request; `max_retries` is the SDK's own bounded retry
    count (0 disables retries).
    """

    def __init__(
        self,
        model_name: str = DEFAULT_OPENAI_MODEL,
        dimension: int = DEFAULT_DIM,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 0,
        client: Optional[openai.OpenAI] = None,
    ):
        self.model_name = model_name
        self.dimension = dimension
        self.timeout = timeout
        self.max_retries = max_retries
        if client is None:
            try:
                client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=max_retries)
            except openai.OpenAIError as e:
                raise EmbeddingProviderError(f"OpenAI client could not be created: {e}") from e
        self._client = client

    def embed(self, text: str) -> np.ndarray:
        payload = truncate_text(text)
        kwargs = {"model": self.model_name, "input": payload}
        # Only the v3 embedding models accept a requested output size
        if self.model_name.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimension

        start = time.perf_counter()
        try:
            response = self._client.embeddings.create(**kwargs)
        except openai.APITimeoutError as e:
            logger.error(f"Embedding request timed out after {self.timeout}s (text_length={len(text)})")
            raise EmbeddingTimeoutError(f"Embedding request timed out after {self.timeout}s") from e
        except Exception as e:
            logger.error(f"Failed to create embedding (text_length={len(text)}): {e}")
            raise EmbeddingProviderError("Failed to create text embedding") from e

        data = getattr(response, "data", None)
        if not data:
            raise EmbeddingProviderError("Embedding provider returned no data")
        vector = np.asarray(data[0].embedding, dtype=np.float32)
        if vector.shape != (self.dimension,):
            raise EmbeddingProviderError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {vector.shape[-1]}"
            )

        logger.debug(
            f"embedding_creation took {(time.perf_counter() - start) * 1000:.1f}ms "
            f"(text_length={len(text)}, model={self.model_name})"
        )
        return vector

    def warmup(self):
        """Nothing to load for a remote provider."""

    def get_info(self) -> dict:
        return {
            "provider": "openai",
            "model_name": self.model_name,
            "output_dimension": self.dimension,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
        }


class EmbeddingEngine:
    """
    Local sentence-transformers embedding engine.

    Features:
    - Lazy model loading with thread safety
    - Matryoshka truncation / zero padding to the store dimension
    - Automatic device selection (CUDA/MPS/CPU)
    """

    def __init__(
        self,
        model_name: Optional[str] = None,
        model_key: Optional[str] = None,
        dimension: int = DEFAULT_DIM,
        device: Literal["auto", "cuda", "cpu", "mps"] = "auto",
        use_gpu: bool = True,
        max_seq_length: int = 512,
    ):
        """
        Initialize embedding engine.

        Args:
            model_name: Direct HuggingFace model name (overrides model_key)
            model_key: Preset model key (bge-m3, bge-small-en, minilm)
            dimension: Output embedding dimension
            device: Device to run on ('auto', 'cuda', 'cpu', 'mps')
            use_gpu: Whether to attempt GPU acceleration
            max_seq_length: Maximum sequence length for encoding
        """
        if model_name:
            self.model_name = model_name
            self.model_key = "custom"
        else:
            self.model_key = model_key or DEFAULT_MODEL_KEY
            if self.model_key not in MODEL_CONFIGS:
                logger.warning(f"Unknown model key: {self.model_key}, using {DEFAULT_MODEL_KEY}")
                self.model_key = DEFAULT_MODEL_KEY
            self.model_name = MODEL_CONFIGS[self.model_key]["name"]

        self.dimension = dimension
        self.device = device
        self.use_gpu = use_gpu
        self.max_seq_length = max_seq_length
        self._model = None
        self._lock = threading.Lock()

    @property
    def model(self):
        """Lazy load the model (thread-safe)."""
        if self._model is None:
            with self._lock:
                if self._model is None:
                    self._load_model()
        return self._model

    def _resolve_device(self) -> str:
        if self.device != "auto":
            return self.device

        if not self.use_gpu:
            return "cpu"

        try:
            import torch
            if torch.cuda.is_available():
                return "cuda"
            elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
                return "mps"
        except ImportError:
            pass

        return "cpu"

    def _load_model(self):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "Please install sentence-transformers: pip install 'maas-memory[local]'"
            )

        device = self._resolve_device()
        logger.info(f"Loading model {self.model_name} on {device}...")

        try:
            self._model = SentenceTransformer(self.model_name, device=device)
            if hasattr(self._model, "max_seq_length"):
                self._model.max_seq_length = self.max_seq_length
            logger.info(f"✓ Loaded {self.model_name} (dim={self._model.get_sentence_embedding_dimension()})")

        except Exception as e:
            logger.warning(f"Failed to load {self.model_name}: {e}")
            logger.info(f"Falling back to {MODEL_CONFIGS[FALLBACK_MODEL_KEY]['name']}")

            self._model = SentenceTransformer(
                MODEL_CONFIGS[FALLBACK_MODEL_KEY]["name"],
                device=device,
            )
            self.model_name = MODEL_CONFIGS[FALLBACK_MODEL_KEY]["name"]
            self.model_key = FALLBACK_MODEL_KEY

    def encode(
        self,
        texts: list[str] | str,
        normalize: bool = True,
        batch_size: int = 32,
    ) -> np.ndarray:
        """
        Encode texts into embeddings of shape (n_texts, dimension).
        """
        if isinstance(texts, str):
            texts = [texts]

        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)

        embeddings = self.model.encode(
            [truncate_text(t) for t in texts],
            normalize_embeddings=normalize,
            show_progress_bar=False,
            convert_to_numpy=True,
            batch_size=batch_size,
        )
        return fit_dimension(embeddings, self.dimension, normalize=normalize)

    def embed(self, text: str) -> np.ndarray:
        try:
            return self.encode([text])[0]
        except Exception as e:
            logger.error(f"Local embedding failed (text_length={len(text)}): {e}")
            raise EmbeddingProviderError("Failed to create text embedding") from e

    def warmup(self):
        """Warmup the model with a dummy encoding."""
        logger.info("Warming up embedding model...")
        self.encode("warmup")
        logger.info("✓ Model ready")

    def get_info(self) -> dict:
        if self._model is not None:
            native_dimension = self._model.get_sentence_embedding_dimension()
        else:
            native_dimension = MODEL_CONFIGS.get(self.model_key, {}).get("max_dim")
        return {
            "provider": "local",
            "model_name": self.model_name,
            "model_key": self.model_key,
            "output_dimension": self.dimension,
            "native_dimension": native_dimension,
            "device": self._resolve_device(),
            "max_seq_length": self.max_seq_length,
        }


def get_engine(config: MemoryConfig) -> OpenAIEmbeddingEngine | EmbeddingEngine:
    """Build the embedding provider selected by the configuration."""
    if config.embedding_provider == "openai":
        return OpenAIEmbeddingEngine(
            model_name=config.embedding_model or DEFAULT_OPENAI_MODEL,
            dimension=config.embedding_dim,
            api_key=config.openai_api_key,
            timeout=config.embedding_timeout,
            max_retries=config.embedding_max_retries,
        )
    if config.embedding_model in MODEL_CONFIGS:
        return EmbeddingEngine(
            model_key=config.embedding_model,
            dimension=config.embedding_dim,
            use_gpu=config.use_gpu,
        )
    return EmbeddingEngine(
        model_name=config.embedding_model,
        dimension=config.embedding_dim,
        use_gpu=config.use_gpu,
    )
