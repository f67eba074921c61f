"""
Embedding Service: text to fixed-length vectors with caching, a token budget and a local fallback.
"""

import hashlib
import math
import threading
import time
from collections import OrderedDict, deque
from typing import List, Optional

from ..utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from ..utils.config import EmbeddingConfig, config
from ..utils.logging_config import get_logger
from ..utils.text_utils import STOP_WORDS, cosine_similarity, normalize_text, tokenize

logger = get_logger(__name__)

TOKEN_WINDOW_SECONDS = 60.0


class EmbeddingError(Exception):
    """Custom exception for embedding errors."""
    pass


def hashed_term_frequency(text: str, dimension: int) -> List[float]:
    """Deterministic bag-of-words embedding.

    Stop words and single-character tokens are dropped, every remaining token is
    hashed into one of `dimension` buckets and the term-frequency vector is
    L2-normalized. Text without usable tokens maps to the zero vector.
    """
    vector = [0.0] * dimension
    for token in tokenize(text):
        if len(token) <= 1 or token in STOP_WORDS:
            continue
        digest = hashlib.md5(token.encode('utf-8')).digest()
        vector[int.from_bytes(digest[:8], 'big') % dimension] += 1.0

    norm = math.sqrt(sum(v * v for v in vector))
    if norm > 0:
        vector = [v / norm for v in vector]
    return vector


class EmbeddingService:
    """Embedding provider adapter shared by the entity and memory services."""

    def __init__(self, settings: Optional[EmbeddingConfig] = None, remote: Optional[BedrockEmbed] = None):
        """
        Initialize the embedding service.

        Args:
            settings: EmbeddingConfig, uses the global configuration if None
            remote: Bedrock client; built from configuration when external calls are enabled
        """
        self.settings = settings or config.embedding
        self.dimension = self.settings.dimension

        self.remote = remote
        if self.remote is None and self.settings.use_external_api:
            self.remote = BedrockEmbed(config.bedrock_embed)

        self._cache: 'OrderedDict[str, List[float]]' = OrderedDict()
        self._cache_lock = threading.Lock()
        self._token_window = deque()
        self._total_tokens = 0
        self._remote_calls = 0
        self._fallback_calls = 0

        logger.info(f'Initialized EmbeddingService (external={self.remote is not None}, dimension={self.dimension})')

    @property
    def token_usage(self) -> int:
        """Cumulative tokens reported by the remote provider."""
        with self._cache_lock:
            return self._total_tokens

    def stats(self) -> dict:
        with self._cache_lock:
            return {
                'cache_entries': len(self._cache),
                'total_tokens': self._total_tokens,
                'remote_calls': self._remote_calls,
                'fallback_calls': self._fallback_calls
            }

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()
        logger.debug('Cleared embedding cache')

    def embed(self, text: str) -> List[float]:
        """
        Convert text to an embedding vector.

        Args:
            text: Text to embed

        Returns:
            Embedding vector of the remote model's size, or of the configured
            dimension when produced locally

        Raises:
            EmbeddingError: If the remote call fails and the fallback is disabled
        """
        key = normalize_text(text)

        with self._cache_lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
                return list(cached)

        embedding = None
        if self.remote is not None and key:
            if self._within_budget():
                try:
                    embedding, tokens = self.remote.embed_with_usage(key)
                    self._record_tokens(tokens)
                except BedrockEmbedError as e:
                    logger.warning(f'Remote embedding failed, using local fallback: {e}')
            else:
                logger.warning('Embedding token budget exhausted for this minute, using local fallback')

        if embedding is None:
            if self.remote is not None and not self.settings.use_fallback:
                raise EmbeddingError('Remote embedding unavailable and local fallback disabled')
            embedding = hashed_term_frequency(key, self.dimension)
            with self._cache_lock:
                self._fallback_calls += 1

        with self._cache_lock:
            self._cache[key] = list(embedding)
            self._cache.move_to_end(key)
            while len(self._cache) > self.settings.max_cache_entries:
                self._cache.popitem(last=False)

        return list(embedding)

    def similarity(self, a: List[float], b: List[float]) -> float:
        return cosine_similarity(a, b)

    def _within_budget(self) -> bool:
        if self.settings.tokens_per_minute <= 0:
            return True
        now = time.monotonic()
        with self._cache_lock:
            while self._token_window and now - self._token_window[0][0] > TOKEN_WINDOW_SECONDS:
                self._token_window.popleft()
            used = sum(tokens for _, tokens in self._token_window)
        return used < self.settings.tokens_per_minute

    def _record_tokens(self, tokens: int) -> None:
        with self._cache_lock:
            self._total_tokens += tokens
            self._remote_calls += 1
            self._token_window.append((time.monotonic(), tokens))
