"""
Amazon Bedrock embedding client wrapper with retry logic, client timeouts and token accounting.
"""

import json
import random
import time
from typing import List, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client with retry logic and error handling."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (a new one is created when None)
        """
        self.config = config
        self.model_id = config.model_id
        self.output_embedding_length = config.dimension

        if client is None:
            boto_config = BotoConfig(connect_timeout=config.connect_timeout,
                                     read_timeout=config.read_timeout,
                                     retries={'max_attempts': 0})
            kwargs = {'service_name': 'bedrock-runtime', 'region_name': config.region, 'config': boto_config}
            if config.endpoint_url:
                kwargs['endpoint_url'] = config.endpoint_url
            client = boto3.client(**kwargs)
        self.bedrock = client

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Args:
            data: Request data dictionary

        Returns:
            Response dictionary from Bedrock API

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')

                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')

                result = json.loads(response.get('body').read())
                logger.debug('Bedrock Embed request successful')
                return result

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def embed_with_usage(self, text: str) -> Tuple[List[float], int]:
        """
        Generate an embedding and report the input tokens the provider counted.

        Args:
            text: Text to embed

        Returns:
            Tuple of (embedding values, input token count)

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for embedding')
            return [0.0] * self.output_embedding_length, 0

        model = self.model_id.lower()
        try:
            if 'titan' in model:
                data = {'inputText': text, 'dimensions': self.output_embedding_length}
                response = self._call_with_retry(data)
                embedding = response.get('embedding')
                tokens = int(response.get('inputTextTokenCount', 0))

            elif 'cohere' in model:
                if self.output_embedding_length != 1024:
                    raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.output_embedding_length}')

                data = {'input_type': 'search_document', 'texts': [text]}
                response = self._call_with_retry(data)
                embeddings = response.get('embeddings') or []
                embedding = embeddings[0] if embeddings else None
                tokens = 0

            else:
                raise BedrockEmbedError(f'Unsupported model for embedding: {self.model_id}')

        except BedrockEmbedError:
            raise
        except Exception as e:
            logger.error(f'Error generating embedding: {e}')
            raise BedrockEmbedError(f'Embedding failed: {e}')

        if not embedding:
            raise BedrockEmbedError(f'Bedrock returned no embedding for model {self.model_id}')
        return [float(v) for v in embedding], tokens

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for document text.

        Args:
            text: Text to embed

        Returns:
            List of embedding values

        Raises:
            BedrockEmbedError: If embedding generation fails
        """
        embedding, _ = self.embed_with_usage(text)
        return embedding

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_embedding = self.embed_document('test')
            return len(test_embedding) == self.output_embedding_length

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
