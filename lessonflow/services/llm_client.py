"""Thin Bedrock client wrapper for generative analysis invocations."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from lessonflow.config.settings import settings
from lessonflow.pipelines.lesson.errors import ProviderTimeoutError, TransientProviderError
from lessonflow.services.aws import create_boto3_client
from lessonflow.telemetry import record_provider_call

logger = logging.getLogger(__name__)

PROVIDER = "bedrock"


class LlmInvocationError(TransientProviderError):
    """Raised when the Bedrock invocation fails."""

    def __init__(self, message: str) -> None:
        super().__init__(PROVIDER, message)


def _decode_bedrock_api_key(secret_value: Optional[str]) -> tuple[str, str] | None:
    """Decode the BEDROCK_API_KEY secret into access/secret key components."""

    if not secret_value:
        return None

    try:
        decoded_bytes = base64.b64decode(secret_value.strip())
    except (binascii.Error, ValueError):
        decoded_bytes = secret_value.encode("utf-8", "ignore")

    filtered = "".join(chr(b) for b in decoded_bytes if 31 < b < 127)
    if ":" not in filtered:
        return None
    access_key, secret_key = filtered.split(":", 1)
    return access_key, secret_key


class BedrockLlmClient:
    """Invoke Amazon Bedrock models with standard configuration."""

    def __init__(self, client: Any = None, *, timeout_seconds: float | None = None) -> None:
        self._model_id = settings.bedrock.model_id
        self._timeout = timeout_seconds or settings.pipeline.analysis_timeout_seconds
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            api_key_tuple = None
            if settings.bedrock.api_key:
                api_key_tuple = _decode_bedrock_api_key(
                    settings.bedrock.api_key.get_secret_value()
                )
            self._client = create_boto3_client(
                "bedrock-runtime",
                region_name=settings.bedrock.region,
                aws_access_key_id=api_key_tuple[0] if api_key_tuple else None,
                aws_secret_access_key=api_key_tuple[1] if api_key_tuple else None,
            )
        return self._client

    async def invoke(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        model_id: str | None = None,
    ) -> str:
        """Run a Bedrock ``converse`` call and return the aggregate text output."""

        target_model_id = model_id or self._model_id
        inference_cfg = {
            "maxTokens": max_tokens or settings.bedrock.max_tokens,
            "temperature": (
                temperature
                if temperature is not None
                else settings.bedrock.temperature
            ),
            "topP": top_p if top_p is not None else settings.bedrock.top_p,
        }

        def _call() -> str:
            response = self.client.converse(
                modelId=target_model_id,
                system=[{"text": system_prompt}],
                messages=[{"role": "user", "content": [{"text": user_prompt}]}],
                inferenceConfig=inference_cfg,
            )
            content_blocks = (
                response.get("output", {})
                .get("message", {})
                .get("content", [])
            )
            texts = [block.get("text", "") for block in content_blocks if block.get("text")]
            return "\n".join(texts).strip()

        try:
            result = await asyncio.wait_for(run_in_threadpool(_call), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            record_provider_call(PROVIDER, "timeout")
            raise ProviderTimeoutError(PROVIDER, self._timeout) from exc
        except (BotoCoreError, ClientError) as exc:
            record_provider_call(PROVIDER, "error")
            raise LlmInvocationError(str(exc)) from exc

        record_provider_call(PROVIDER, "ok")
        if not result:
            raise LlmInvocationError("Bedrock returned an empty response.")
        return result


__all__ = ["BedrockLlmClient", "LlmInvocationError"]
