"""Tests for the embedding provider adapter and the Bedrock client wrapper."""
import io
import json
import math
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from memengine.services.embedding import EmbeddingError, EmbeddingService, hashed_term_frequency
from memengine.utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from memengine.utils.config import BedrockEmbedConfig, EmbeddingConfig

TEST_DIMENSION = 256


class FakeRemote:
    """Stands in for BedrockEmbed; returns a fixed vector or raises."""

    def __init__(self, tokens=5, fail=False, dimension=8):
        self.tokens = tokens
        self.fail = fail
        self.dimension = dimension
        self.calls = []

    def embed_with_usage(self, text):
        self.calls.append(text)
        if self.fail:
            raise BedrockEmbedError('service unavailable')
        return [1.0] + [0.0] * (self.dimension - 1), self.tokens


def _settings(**overrides):
    values = dict(dimension=TEST_DIMENSION, use_external_api=False, use_fallback=True, tokens_per_minute=150000, max_cache_entries=100)
    values.update(overrides)
    return EmbeddingConfig(**values)


class TestHashedTermFrequency:
    """Deterministic local fallback embedding."""

    def test_deterministic_and_normalized(self):
        a = hashed_term_frequency('morning run along the river', 64)
        b = hashed_term_frequency('morning run along the river', 64)
        assert a == b
        assert len(a) == 64
        assert math.isclose(math.sqrt(sum(v * v for v in a)), 1.0, rel_tol=1e-9)

    def test_stop_words_only_gives_zero_vector(self):
        assert hashed_term_frequency('the and of', 32) == [0.0] * 32

    def test_similar_texts_are_closer_than_unrelated(self, embedding):
        base = embedding.embed('planning the hiking trip to the mountains')
        similar = embedding.embed('hiking trip to the mountains')
        unrelated = embedding.embed('quarterly tax report spreadsheet')
        assert embedding.similarity(base, similar) > embedding.similarity(base, unrelated)


class TestEmbeddingService:
    """Caching, remote calls, token budget and fallback."""

    def test_fallback_dimension(self, embedding):
        assert len(embedding.embed('Write the weekly report')) == TEST_DIMENSION

    def test_cache_hit_on_normalized_text(self, embedding):
        first = embedding.embed('Write the weekly report!')
        second = embedding.embed('  write the WEEKLY report ')
        assert first == second
        assert embedding.stats()['fallback_calls'] == 1
        assert embedding.stats()['cache_entries'] == 1

    def test_cache_evicts_least_recently_used(self):
        service = EmbeddingService(settings=_settings(max_cache_entries=2))
        service.embed('alpha words')
        service.embed('beta words')
        service.embed('alpha words')
        service.embed('gamma words')
        assert service.stats()['cache_entries'] == 2
        service.embed('alpha words')
        assert service.stats()['fallback_calls'] == 3

    def test_clear_cache(self, embedding):
        embedding.embed('something to remember')
        embedding.clear_cache()
        assert embedding.stats()['cache_entries'] == 0

    def test_remote_result_and_token_accounting(self):
        remote = FakeRemote(tokens=7)
        service = EmbeddingService(settings=_settings(), remote=remote)
        vector = service.embed('Call the dentist')
        assert vector[0] == 1.0
        assert service.token_usage == 7
        assert remote.calls == ['call the dentist']

    def test_remote_failure_falls_back(self):
        service = EmbeddingService(settings=_settings(), remote=FakeRemote(fail=True))
        vector = service.embed('Call the dentist')
        assert len(vector) == TEST_DIMENSION
        assert service.stats()['fallback_calls'] == 1

    def test_remote_failure_without_fallback_raises(self):
        service = EmbeddingService(settings=_settings(use_fallback=False), remote=FakeRemote(fail=True))
        with pytest.raises(EmbeddingError):
            service.embed('Call the dentist')

    def test_token_budget_exhaustion_uses_fallback(self):
        remote = FakeRemote(tokens=20)
        service = EmbeddingService(settings=_settings(tokens_per_minute=10), remote=remote)
        service.embed('first request')
        vector = service.embed('second request')
        assert len(remote.calls) == 1
        assert len(vector) == TEST_DIMENSION


class TestBedrockEmbed:
    """Bedrock client wrapper with a stubbed bedrock-runtime client."""

    def _config(self, model_id='amazon.titan-embed-text-v2:0', dimension=4):
        return BedrockEmbedConfig(region='us-east-1', model_id=model_id, dimension=dimension, retry_attempts=2, retry_delay=0.0)

    def test_titan_embedding_with_usage(self):
        client = MagicMock()
        client.invoke_model.return_value = {
            'body': io.BytesIO(json.dumps({'embedding': [0.1, 0.2, 0.3, 0.4], 'inputTextTokenCount': 3}).encode())
        }
        embed = BedrockEmbed(self._config(), client=client)
        vector, tokens = embed.embed_with_usage('hello world')
        assert vector == [0.1, 0.2, 0.3, 0.4]
        assert tokens == 3
        body = json.loads(client.invoke_model.call_args.kwargs['body'])
        assert body == {'inputText': 'hello world', 'dimensions': 4}

    def test_retries_then_raises(self, monkeypatch):
        monkeypatch.setattr('memengine.utils.bedrock_embed.time.sleep', lambda _: None)
        client = MagicMock()
        client.invoke_model.side_effect = ClientError({'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'}}, 'InvokeModel')
        embed = BedrockEmbed(self._config(), client=client)
        with pytest.raises(BedrockEmbedError):
            embed.embed_with_usage('hello world')
        assert client.invoke_model.call_count == 2

    def test_unsupported_model(self):
        embed = BedrockEmbed(self._config(model_id='acme.embedder'), client=MagicMock())
        with pytest.raises(BedrockEmbedError):
            embed.embed_with_usage('hello world')

    def test_health_check_false_on_error(self):
        client = MagicMock()
        client.invoke_model.side_effect = RuntimeError('boom')
        assert BedrockEmbed(self._config(), client=client).health_check() is False
