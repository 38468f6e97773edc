from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable, Sequence

from kbembed.core.config import Settings
from kbembed.core.errors import (
    ProviderConfigError,
    ProviderFormatError,
    ProviderRequestError,
    RateLimitBackendError,
    ServiceError,
    StoreError,
    blocked_origin,
    internal_error,
    invalid_request,
    missing_configuration,
    project_not_found,
)
from kbembed.domain.records import ChunkMatch, ProjectRecord, UsageDecision, UsageLimits
from kbembed.persistence.store import KnowledgeStore
from kbembed.providers.llm.base import GenerativeProvider
from kbembed.providers.llm.types import GenerationResult, InputVerdict, OutputVerdict, parse_payload
from kbembed.services.audit import (
    EVENT_BLOCKED_ORIGIN,
    EVENT_CHAT_CALLED,
    EVENT_INJECTION_PATTERN_DETECTED,
    EVENT_QUOTA_EXCEEDED,
    EVENT_RATE_LIMITED,
    EVENT_VALIDATION_FAILED,
    AuditLogger,
)
from kbembed.services.chat import prompts
from kbembed.services.chat.ranking import filter_injection_candidates, rank_chunks_with_diversity
from kbembed.services.embed.origin import canonicalize_origin, is_origin_allowed
from kbembed.services.embed.tokens import InvalidEmbedToken, is_expired, verify_embed_token
from kbembed.services.quota import isoformat_z, reset_at_for, retry_after_seconds
from kbembed.services.rate_limit import ProjectRateLimiter
from kbembed.services.text import estimate_tokens, normalize_input_text


logger = logging.getLogger(__name__)

FLAG_INPUT_BLOCKED = "input_validation_blocked"
FLAG_NO_CONTEXT = "no_retrieval_context"
FLAG_GENERATION_FAILED = "generation_failed"
FLAG_OUTPUT_BLOCKED = "output_validation_blocked"
FLAG_OUTPUT_UNAVAILABLE = "output_validation_unavailable"

_PROVIDER_ERRORS = (ProviderRequestError, ProviderFormatError)


def citation_from_chunk(chunk: ChunkMatch) -> dict[str, Any]:
    metadata = chunk.metadata or {}
    title = metadata.get("title")
    title = title.strip() if isinstance(title, str) and title.strip() else "Source"
    page = metadata.get("page")
    slide = metadata.get("slide")
    file_id = metadata.get("file_id")
    return {
        "source_id": chunk.source_id,
        "title": title,
        "chunk_id": chunk.id,
        "chunk_index": chunk.chunk_index,
        "page": page if isinstance(page, int) and not isinstance(page, bool) else None,
        "slide": slide if isinstance(slide, int) and not isinstance(slide, bool) else None,
        "file_id": file_id if isinstance(file_id, str) else None,
    }


def _coerce_chunk_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def validate_model_citations(
    raw_citations: Sequence[Any],
    chunks: Sequence[ChunkMatch],
    limit: int,
) -> list[dict[str, Any]]:
    """Keep citations that reference a supplied chunk id.

    Fields are rebuilt from the supplied chunk so the model cannot attach
    a foreign title, page or file id to a valid chunk id.
    """
    by_id = {chunk.id: chunk for chunk in chunks}
    valid: list[dict[str, Any]] = []
    for item in raw_citations:
        if not isinstance(item, dict):
            continue
        chunk_id = _coerce_chunk_id(item.get("chunk_id"))
        if chunk_id is None or chunk_id not in by_id:
            continue
        valid.append(citation_from_chunk(by_id[chunk_id]))
    return valid[:limit]


def chat_response(answer: str, citations: list[dict[str, Any]], warnings: list[str]) -> dict[str, Any]:
    return {
        "answer": answer,
        "citations": citations,
        "warning_flags": warnings,
        "ui": {"has_citations": bool(citations)},
    }


def _rate_limited(retry_after: int) -> ServiceError:
    return ServiceError(
        status_code=429,
        code="rate_limited",
        message="Rate limit reached. Please try again shortly.",
        retryable=True,
        details={"retry_after_seconds": retry_after},
        headers={"retry-after": str(retry_after)},
    )


def _quota_exceeded(decision: UsageDecision, now: datetime) -> ServiceError:
    reset_at = reset_at_for(decision)
    retry_after = retry_after_seconds(reset_at, now)
    return ServiceError(
        status_code=429,
        code="quota_exceeded",
        message="This chat has reached its usage quota.",
        details={
            "reason": decision.reason,
            "daily_reset_at": isoformat_z(decision.daily_reset_at),
            "monthly_reset_at": isoformat_z(decision.monthly_reset_at),
            "retry_after_seconds": retry_after,
            "reset_at": isoformat_z(reset_at),
        },
        headers={"retry-after": str(retry_after)},
    )


def _limits_for(project: ProjectRecord) -> UsageLimits:
    return UsageLimits(
        daily_requests=project.quota_daily_requests,
        monthly_requests=project.quota_monthly_requests,
        daily_tokens=project.quota_daily_tokens,
        monthly_tokens=project.quota_monthly_tokens,
    )


class ChatGateway:
    """Runs one widget chat turn from token check to grounded answer.

    Authentication, origin, rate and quota denials raise ``ServiceError``.
    Safety and generation problems after the input judge degrade to canned
    answers with warning flags.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        audit: AuditLogger,
        limiter: ProjectRateLimiter,
        provider: GenerativeProvider,
        settings: Settings,
        *,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._limiter = limiter
        self._provider = provider
        self._settings = settings
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._time_provider(), tz=timezone.utc)

    async def handle(self, *, embed_token: object, message: object, origin_header: str | None) -> dict[str, Any]:
        settings = self._settings
        secret = settings.embed_token_signing_secret
        if not secret:
            raise missing_configuration("Required environment variables are missing.")

        token = embed_token.strip() if isinstance(embed_token, str) else ""
        text = normalize_input_text(message if isinstance(message, str) else "")
        text = text[: settings.chat_input_max_chars]
        if not token or not text:
            raise invalid_request("embed_token and message are required.")

        try:
            payload = verify_embed_token(token, secret)
        except InvalidEmbedToken as exc:
            raise ServiceError(status_code=401, code="invalid_embed_token", message="Invalid embed token.") from exc
        if is_expired(payload, int(self._time_provider())):
            raise ServiceError(
                status_code=401,
                code="expired_embed_token",
                message="Embed token expired.",
                retryable=True,
            )

        origin = canonicalize_origin(origin_header)
        if origin is None:
            raise ServiceError(
                status_code=400,
                code="invalid_origin_format",
                message="A valid request Origin header is required.",
            )
        if origin != payload.origin:
            raise blocked_origin(payload.project_handle)

        project = await self._store.get_project(payload.project_id)
        if project is None or project.handle != payload.project_handle:
            raise project_not_found()
        if not is_origin_allowed(origin, project.allowed_origins):
            await self._audit.record(
                EVENT_BLOCKED_ORIGIN,
                project_id=project.id,
                origin=origin,
                metadata={
                    "project_handle": project.handle,
                    "token_origin": payload.origin,
                    "request_origin": origin,
                },
            )
            raise blocked_origin(project.handle)

        await self._consume_rate_limit(project, origin)

        estimated_input_tokens = estimate_tokens(text)
        try:
            await self._reserve(project, origin, requests=1, tokens_in=estimated_input_tokens, tokens_out=0)
        except StoreError as exc:
            raise internal_error("Failed to enforce usage quotas.") from exc

        try:
            verdict_payload = await self._provider.complete_json(
                model=settings.openai_validation_model,
                instruction=prompts.input_judge_instruction(project.input_validation_policy),
                user_content=prompts.input_judge_content(text),
            )
            verdict = parse_payload(InputVerdict, verdict_payload)
        except ProviderConfigError as exc:
            raise missing_configuration("Required environment variables are missing.") from exc
        except _PROVIDER_ERRORS as exc:
            logger.warning("chat_input_judge_failed project_id=%s", project.id, exc_info=exc)
            await self._audit.record(
                EVENT_VALIDATION_FAILED,
                project_id=project.id,
                origin=origin,
                metadata={"stage": "input", "reason": "input_judge_unavailable"},
            )
            raise ServiceError(
                status_code=503,
                code="temporary_validation_failure",
                message="Validation service unavailable.",
                retryable=True,
            ) from exc
        if not verdict.allowed:
            await self._audit.record(
                EVENT_VALIDATION_FAILED,
                project_id=project.id,
                origin=origin,
                metadata={"stage": "input", "reason": verdict.reason or "blocked_by_input_judge"},
            )
            return chat_response(prompts.INPUT_BLOCKED_ANSWER, [], [FLAG_INPUT_BLOCKED])

        try:
            vectors = await self._provider.embed(model=settings.openai_embedding_model, texts=[text])
            if len(vectors) != 1:
                raise ProviderFormatError("expected one query embedding")
        except _PROVIDER_ERRORS + (ProviderConfigError,) as exc:
            logger.warning("chat_query_embedding_failed project_id=%s", project.id, exc_info=exc)
            raise internal_error("Failed to create query embedding.") from exc

        try:
            candidates = await self._store.match_source_chunks(
                project.id, vectors[0], settings.chat_retrieval_candidates
            )
        except StoreError as exc:
            raise internal_error("Failed to retrieve source chunks.") from exc

        survivors, filtered_count = filter_injection_candidates(candidates)
        if filtered_count:
            await self._audit.record(
                EVENT_INJECTION_PATTERN_DETECTED,
                project_id=project.id,
                origin=origin,
                metadata={"filtered_chunks": filtered_count},
            )

        ranked = rank_chunks_with_diversity(
            survivors,
            settings.chat_retrieval_final,
            settings.chat_retrieval_max_per_source,
        )
        final_chunks = [item.chunk for item in ranked]
        if not final_chunks:
            await self._audit.record(
                EVENT_CHAT_CALLED,
                project_id=project.id,
                origin=origin,
                metadata={
                    "retrieval_candidates": len(candidates),
                    "retrieval_selected": 0,
                    "reason": "no_context",
                },
            )
            return chat_response(prompts.NO_CONTEXT_ANSWER, [], [FLAG_NO_CONTEXT])

        context_block = prompts.build_untrusted_context(final_chunks)
        default_citations = [citation_from_chunk(chunk) for chunk in final_chunks][: settings.chat_max_citations]
        answer, citations, warnings = await self._generate(text, context_block, final_chunks, default_citations)
        answer, citations, warnings = await self._judge_output(
            project, origin, text, answer, citations, warnings
        )

        actual_input_tokens = estimate_tokens(text + context_block)
        output_tokens = estimate_tokens(answer)
        extra_input_tokens = max(0, actual_input_tokens - estimated_input_tokens)
        try:
            await self._reserve(
                project,
                origin,
                requests=0,
                tokens_in=extra_input_tokens,
                tokens_out=output_tokens,
            )
        except StoreError as exc:
            raise internal_error("Failed to update usage counters.") from exc

        await self._audit.record(
            EVENT_CHAT_CALLED,
            project_id=project.id,
            origin=origin,
            metadata={
                "origin": origin,
                "token_jti": payload.jti,
                "retrieval_candidates": len(candidates),
                "retrieval_selected": len(final_chunks),
                "filtered_injection_chunks": filtered_count,
                "response_citations": len(citations),
                "input_tokens_estimated": actual_input_tokens,
                "output_tokens_estimated": output_tokens,
            },
        )
        logger.info(
            "chat_completed project_id=%s selected=%s citations=%s warnings=%s",
            project.id,
            len(final_chunks),
            len(citations),
            ",".join(warnings),
        )
        return chat_response(answer, citations, warnings)

    async def _consume_rate_limit(self, project: ProjectRecord, origin: str) -> None:
        try:
            decision = await self._limiter.consume(
                project.id,
                rpm=project.rate_limit_rpm,
                burst=project.rate_limit_burst,
            )
        except RateLimitBackendError as exc:
            logger.warning("chat_rate_limit_unavailable project_id=%s", project.id, exc_info=exc)
            raise internal_error("Failed to enforce rate limit.") from exc
        if decision.allowed:
            return
        await self._audit.record(
            EVENT_RATE_LIMITED,
            project_id=project.id,
            origin=origin,
            metadata={
                "retry_after_seconds": decision.retry_after_seconds,
                "tokens_remaining": decision.tokens_remaining,
            },
        )
        raise _rate_limited(decision.retry_after_seconds)

    async def _reserve(
        self,
        project: ProjectRecord,
        origin: str,
        *,
        requests: int,
        tokens_in: int,
        tokens_out: int,
    ) -> None:
        now = self._now()
        decision = await self._store.reserve_usage(
            project.id,
            _limits_for(project),
            requests=requests,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            now=now,
        )
        if decision.allowed:
            return
        await self._audit.record(
            EVENT_QUOTA_EXCEEDED,
            project_id=project.id,
            origin=origin,
            metadata={
                "reason": decision.reason,
                "daily_requests": decision.daily_requests,
                "monthly_requests": decision.monthly_requests,
                "daily_tokens": decision.daily_tokens,
                "monthly_tokens": decision.monthly_tokens,
                "daily_reset_at": isoformat_z(decision.daily_reset_at),
                "monthly_reset_at": isoformat_z(decision.monthly_reset_at),
            },
        )
        raise _quota_exceeded(decision, now)

    async def _generate(
        self,
        text: str,
        context_block: str,
        chunks: list[ChunkMatch],
        default_citations: list[dict[str, Any]],
    ) -> tuple[str, list[dict[str, Any]], list[str]]:
        try:
            raw = await self._provider.complete_json(
                model=self._settings.openai_chat_model,
                instruction=prompts.generation_instruction(),
                user_content=prompts.generation_content(context_block, text),
            )
            result = parse_payload(GenerationResult, raw)
        except _PROVIDER_ERRORS + (ProviderConfigError,) as exc:
            logger.warning("chat_generation_failed", exc_info=exc)
            return prompts.NO_CONTEXT_ANSWER, default_citations, [FLAG_GENERATION_FAILED]
        answer = result.answer.strip() or prompts.NO_CONTEXT_ANSWER
        citations = validate_model_citations(result.citations, chunks, self._settings.chat_max_citations)
        return answer, citations or default_citations, list(result.warnings)

    async def _judge_output(
        self,
        project: ProjectRecord,
        origin: str,
        text: str,
        answer: str,
        citations: list[dict[str, Any]],
        warnings: list[str],
    ) -> tuple[str, list[dict[str, Any]], list[str]]:
        try:
            raw = await self._provider.complete_json(
                model=self._settings.openai_validation_model,
                instruction=prompts.output_judge_instruction(project.output_validation_policy),
                user_content=prompts.output_judge_content(text, answer, citations),
            )
            verdict = parse_payload(OutputVerdict, raw)
        except _PROVIDER_ERRORS + (ProviderConfigError,) as exc:
            logger.warning("chat_output_judge_failed project_id=%s", project.id, exc_info=exc)
            await self._audit.record(
                EVENT_VALIDATION_FAILED,
                project_id=project.id,
                origin=origin,
                metadata={"stage": "output", "reason": "output_judge_unavailable"},
            )
            return prompts.OUTPUT_UNAVAILABLE_ANSWER, [], [FLAG_OUTPUT_UNAVAILABLE]
        if verdict.allowed and verdict.citations_ok:
            return answer, citations, warnings
        await self._audit.record(
            EVENT_VALIDATION_FAILED,
            project_id=project.id,
            origin=origin,
            metadata={"stage": "output", "reason": verdict.reason or "output_validation_failed"},
        )
        return prompts.OUTPUT_BLOCKED_ANSWER, [], [FLAG_OUTPUT_BLOCKED]
