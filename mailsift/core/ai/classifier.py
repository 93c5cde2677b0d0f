"""
Classification Engine

Builds a bounded context (header, body excerpt, pre-filter hints,
reputation snapshot), asks the external model for a JSON classification,
validates it strictly and writes it onto the Email row.

Decision order for one email:
1. Pre-filter short-circuit (domain blacklist / whitelisted transactional sender)
2. Reputation shortcut (sender confidence >= threshold with a primary category)
3. External model (LangChain + OpenAI)

The model is untrusted: a timeout, transport error, unparsable or
out-of-range answer resolves to ClassificationResult.fallback() and a
`classifier_contract_failure` warning. classify() never raises for those.
Reputation is only read here.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol
import json
import logging
import re
import time
import uuid

from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
import openai
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from mailsift.core.database import AccountRepository, EmailRepository, Store
from mailsift.core.email.prefilter import PrefilterInput, PrefilterResult, RulePrefilter
from mailsift.core.email.priority_rules import determine_priority, needs_reply_heuristic, suggest_action
from mailsift.core.email.signals import domain_of, is_no_reply
from mailsift.core.errors import BatchBudgetExceeded, ClassifierContractError, EmailNotFoundError, MailsiftError
from mailsift.core.providers.mime import html_to_text
from mailsift.core.reputation import ReputationContext, ReputationStore
from mailsift.core.retry_manager import BackoffPolicy
from .prompts import SYSTEM_PROMPT, format_context, format_header, get_classifier_prompt
from .schemas import (
    Category,
    ClassificationResult,
    ClassificationSource,
    SuggestedAction,
    build_suggestions,
    dump_suggestions,
)

logger = logging.getLogger(__name__)

CONTRACT_FAILURE_EVENT = "classifier_contract_failure"
JSON_OBJECT_PATTERN = re.compile(r'\{[\s\S]*\}')


def _truncate_email_content(content: str, max_chars: int = 5000) -> tuple[str, bool]:
    """
    Truncate email content to stay within the context budget.

    Takes 70% from the beginning and 30% from the end (to capture both
    context and conclusion) with a marker in the middle.

    Returns:
        Tuple of (truncated_content, was_truncated)
    """
    if len(content) <= max_chars:
        return content, False

    first_chunk = content[:int(max_chars * 0.7)]
    last_chunk = content[-int(max_chars * 0.3):]
    marker = f"\n\n[... {len(content) - max_chars:,} characters truncated ...]\n\n"
    return first_chunk + marker + last_chunk, True


def parse_model_response(raw: str) -> ClassificationResult:
    """
    Extract the JSON object from a model answer and validate it.

    Raises:
        ClassifierContractError: No JSON object, invalid JSON, wrong shape or out-of-range values
    """
    match = JSON_OBJECT_PATTERN.search(raw or "")
    if not match:
        raise ClassifierContractError("No JSON object in classifier response")
    try:
        data = json.loads(match.group(0))
    except ValueError as e:
        raise ClassifierContractError(f"Invalid JSON from classifier: {e}") from e
    if not isinstance(data, dict):
        raise ClassifierContractError("Classifier response is not a JSON object")
    data.pop('source', None)
    try:
        result = ClassificationResult.model_validate(data)
    except ValidationError as e:
        fields = sorted({'.'.join(str(p) for p in err['loc']) for err in e.errors()})
        raise ClassifierContractError(f"Classifier response failed validation: {', '.join(fields)}") from e
    return result.model_copy(update={'source': ClassificationSource.MODEL})


class ClassifierClient(Protocol):
    """Narrow request/response contract with the external model."""

    async def complete(self, system: str, prompt: str) -> str:
        ...


class LangChainClassifierClient:
    """OpenAI chat model through LangChain; returns the raw answer text."""

    def __init__(self,
                 model: str = "gpt-4o-mini",
                 temperature: float = 0.3,
                 api_key: Optional[str] = None,
                 base_url: Optional[str] = None,
                 max_tokens: int = 1024,
                 timeout: float = 20.0):
        if not api_key:
            raise ValueError("OPENAI_API_KEY not found in environment")
        self.model_name = model
        self.llm = ChatOpenAI(
            model=model,
            temperature=temperature,
            api_key=api_key,
            base_url=base_url,
            max_tokens=max_tokens,
            timeout=timeout,
            max_retries=0,
        )
        prompt = ChatPromptTemplate.from_messages([
            ("system", "{system}"),
            ("human", "{input}"),
        ])
        self.chain = prompt | self.llm | StrOutputParser()

    @classmethod
    def from_settings(cls, settings) -> "LangChainClassifierClient":
        return cls(
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            max_tokens=settings.classifier_max_tokens,
            timeout=settings.classifier_timeout_seconds,
        )

    async def complete(self, system: str, prompt: str) -> str:
        return await self.chain.ainvoke({"system": system, "input": prompt})


def _is_retryable_model_error(error: BaseException) -> bool:
    return isinstance(error, (
        openai.RateLimitError,
        openai.APITimeoutError,
        openai.APIConnectionError,
        openai.InternalServerError,
    ))


@dataclass
class EmailContext:
    """Detached view of the email fields classification needs."""
    id: uuid.UUID
    user_id: str
    user_email: str
    from_address: str
    from_name: Optional[str]
    to_address: Optional[str]
    subject: str
    body_text: str
    snippet: str
    list_unsubscribe: Optional[str]
    received_at: Optional[datetime]

    def prefilter_input(self) -> PrefilterInput:
        return PrefilterInput(
            from_address=self.from_address,
            subject=self.subject,
            body_text=self.body_text or self.snippet,
            to_address=self.to_address or "",
            list_unsubscribe=self.list_unsubscribe,
        )


@dataclass
class BatchClassifyResult:
    classified: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    remaining: int = 0
    results: Dict[str, ClassificationResult] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'classified': self.classified,
            'failed': self.failed,
            'errors': list(self.errors),
            'remaining': self.remaining,
        }


class ClassificationEngine:
    """Classifies stored emails and persists the result."""

    def __init__(self,
                 store: Store,
                 reputation: ReputationStore,
                 prefilter: Optional[RulePrefilter] = None,
                 client: Optional[ClassifierClient] = None,
                 backoff: Optional[BackoffPolicy] = None,
                 body_chars: int = 5000,
                 timeout_seconds: float = 20.0,
                 use_threshold: float = 0.85,
                 min_spacing_seconds: float = 0.3,
                 batch_budget_seconds: float = 50.0,
                 batch_size: int = 50,
                 max_errors: int = 5,
                 on_model_classification: Optional[Callable[[str, str, str], None]] = None,
                 sleep: Optional[Callable[[float], Any]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            store: Database handle
            reputation: Read-only source of sender/domain reputation
            prefilter: Deterministic rules (empty rule set if None)
            client: External model; None means every model call falls back
            backoff: Retry policy for transient model transport errors
            on_model_classification: Called with (user_id, sender, category)
                after a model classification is stored
        """
        self.store = store
        self.reputation = reputation
        self.prefilter = prefilter or RulePrefilter()
        self.client = client
        self.backoff = backoff or BackoffPolicy(max_attempts=2)
        self.body_chars = body_chars
        self.timeout_seconds = timeout_seconds
        self.use_threshold = use_threshold
        self.min_spacing_seconds = min_spacing_seconds
        self.batch_budget_seconds = batch_budget_seconds
        self.batch_size = batch_size
        self.max_errors = max_errors
        self.on_model_classification = on_model_classification
        self._sleep = sleep or asyncio.sleep
        self.clock = clock
        self._last_call: Optional[float] = None
        self._spacing_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, store: Store, reputation: ReputationStore,
                      prefilter: Optional[RulePrefilter] = None,
                      client: Optional[ClassifierClient] = None,
                      on_model_classification: Optional[Callable[[str, str, str], None]] = None,
                      ) -> "ClassificationEngine":
        return cls(
            store=store,
            reputation=reputation,
            prefilter=prefilter,
            client=client,
            backoff=BackoffPolicy.from_settings(settings),
            body_chars=settings.classifier_body_chars,
            timeout_seconds=settings.classifier_timeout_seconds,
            use_threshold=settings.reputation_use_threshold,
            min_spacing_seconds=settings.classify_min_spacing_seconds,
            batch_budget_seconds=settings.classify_batch_budget_seconds,
            batch_size=settings.classify_batch_size,
            max_errors=settings.classify_max_errors,
            on_model_classification=on_model_classification,
        )

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _load(self, email_id) -> EmailContext:
        with self.store.session() as db:
            email = EmailRepository(db).get(email_id)
            account = AccountRepository(db).get(email.account_id)
            body = email.body_text or (html_to_text(email.body_html) if email.body_html else "")
            return EmailContext(
                id=email.id,
                user_id=email.user_id,
                user_email=account.email_address,
                from_address=(email.from_address or "").lower(),
                from_name=email.from_name,
                to_address=email.to_address,
                subject=email.subject or "",
                body_text=body,
                snippet=email.snippet or "",
                list_unsubscribe=email.list_unsubscribe,
                received_at=email.received_at,
            )

    def build_prompt(self, email: EmailContext, prefiltered: PrefilterResult,
                     reputation: ReputationContext) -> str:
        content, truncated = _truncate_email_content(email.body_text or email.snippet or "", self.body_chars)
        if truncated:
            logger.debug(f"Email {email.id} body truncated to {self.body_chars} chars for classification")
        header = format_header(
            email.from_address, email.from_name, email.subject, email.to_address,
            email.received_at.isoformat() if email.received_at else None,
        )
        context = format_context(prefiltered.hints, reputation.effective.prompt_view(),
                                 domain_of(email.user_email))
        return get_classifier_prompt(header, content or "(empty body)", context)

    # ------------------------------------------------------------------
    # Deterministic paths
    # ------------------------------------------------------------------

    def _from_reputation(self, email: EmailContext, reputation: ReputationContext) -> Optional[ClassificationResult]:
        sender = reputation.sender
        if sender.confidence < self.use_threshold or not sender.primary_category:
            return None
        try:
            category = Category(sender.primary_category)
        except ValueError:
            return None
        if category == Category.UNCATEGORIZED:
            return None

        priority = determine_priority(category.value, email.subject, email.body_text, sender.trust_level)
        needs_reply = needs_reply_heuristic(category.value, email.subject, email.body_text, email.from_address)
        return ClassificationResult(
            priority=priority,
            category=category,
            confidence=sender.confidence,
            summary=email.subject[:200],
            needs_reply=needs_reply,
            suggested_action=SuggestedAction(suggest_action(category.value, priority, needs_reply)),
            source=ClassificationSource.REPUTATION,
        )

    # ------------------------------------------------------------------
    # Model path
    # ------------------------------------------------------------------

    async def _wait_for_slot(self):
        """Keep at least min_spacing_seconds between the starts of model calls."""
        async with self._spacing_lock:
            if self._last_call is not None:
                wait = self.min_spacing_seconds - (self.clock() - self._last_call)
                if wait > 0:
                    await self._sleep(wait)
            self._last_call = self.clock()

    async def _call_model(self, prompt: str) -> str:
        async def attempt() -> str:
            await self._wait_for_slot()
            return await asyncio.wait_for(self.client.complete(SYSTEM_PROMPT, prompt),
                                          timeout=self.timeout_seconds)

        return await self.backoff.run(attempt, is_retryable=_is_retryable_model_error,
                                      operation_name="classifier call")

    async def _call_model_before(self, prompt: str, deadline: Optional[float]) -> str:
        """Model call (retries included) cut off at the batch deadline."""
        if deadline is None:
            return await self._call_model(prompt)
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise BatchBudgetExceeded("no time left for a model call")
        task = asyncio.ensure_future(self._call_model(prompt))
        done, _ = await asyncio.wait({task}, timeout=remaining)
        if not done:
            task.cancel()
            await asyncio.wait({task})
            raise BatchBudgetExceeded(f"model call exceeded the remaining {remaining:.1f}s")
        return task.result()

    def _log_contract_failure(self, email: EmailContext, reason: str):
        logger.warning(
            f"{CONTRACT_FAILURE_EVENT}: email {email.id}: {reason}",
            extra={'event': CONTRACT_FAILURE_EVENT, 'email_id': str(email.id)},
        )

    async def _from_model(self, email: EmailContext, prefiltered: PrefilterResult,
                          reputation: ReputationContext,
                          deadline: Optional[float] = None) -> ClassificationResult:
        if self.client is None:
            self._log_contract_failure(email, "no classifier configured")
            return ClassificationResult.fallback()

        prompt = self.build_prompt(email, prefiltered, reputation)
        try:
            raw = await self._call_model_before(prompt, deadline)
        except BatchBudgetExceeded:
            raise
        except asyncio.TimeoutError:
            self._log_contract_failure(email, f"timed out after {self.timeout_seconds:.0f}s")
            return ClassificationResult.fallback()
        except Exception as e:
            self._log_contract_failure(email, f"call failed ({type(e).__name__}: {e})")
            return ClassificationResult.fallback()

        try:
            result = parse_model_response(raw)
        except ClassifierContractError as e:
            self._log_contract_failure(email, str(e))
            return ClassificationResult.fallback()

        if result.needs_reply and is_no_reply(email.from_address):
            action = result.suggested_action
            result = result.model_copy(update={
                'needs_reply': False,
                'suggested_action': SuggestedAction.NONE if action == SuggestedAction.REPLY else action,
            })
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def classify(self, email_id, deadline: Optional[float] = None) -> ClassificationResult:
        """
        Classify one email and persist the result (overwriting any previous one).

        Returns:
            A result whose category is always in the closed enum

        Raises:
            EmailNotFoundError: Unknown email id
            BatchBudgetExceeded: The model call did not finish before `deadline`
                (a clock() value); nothing is persisted
        """
        email = self._load(email_id)
        reputation = self.reputation.context_for(email.user_id, email.from_address)
        prefiltered = self.prefilter.evaluate(email.prefilter_input(), email.user_email, reputation.domain_list)

        result = prefiltered.short_circuit or self._from_reputation(email, reputation)
        if result is None:
            result = await self._from_model(email, prefiltered, reputation, deadline)

        fields = result.email_fields()
        fields['ai_suggestions'] = dump_suggestions(build_suggestions(result, prefiltered.hints))
        with self.store.session() as db:
            EmailRepository(db).apply_classification(email.id, fields)

        logger.debug(f"Classified email {email.id}: {result.category.value} "
                     f"(priority {result.priority}, confidence {result.confidence:.2f}, {result.source.value})")

        if result.source == ClassificationSource.MODEL and self.on_model_classification and email.from_address:
            self.on_model_classification(email.user_id, email.from_address, result.category.value)
        return result

    async def classify_batch(self, email_ids: List) -> BatchClassifyResult:
        """
        Classify sequentially with model-call spacing and a wall-clock budget.

        Stops accepting new emails once the budget is used up; the rest is
        reported as `remaining`. One failing email never aborts the batch.
        """
        batch = BatchClassifyResult()
        ids = list(email_ids)
        accepted = ids[:self.batch_size]
        batch.remaining = len(ids) - len(accepted)
        deadline = self.clock() + self.batch_budget_seconds

        for index, email_id in enumerate(accepted):
            if self.clock() >= deadline:
                batch.remaining += len(accepted) - index
                logger.info(f"Classification budget reached after {index} emails, "
                            f"{batch.remaining} remaining")
                break
            try:
                result = await self.classify(email_id, deadline=deadline)
            except BatchBudgetExceeded:
                batch.remaining += len(accepted) - index
                logger.info(f"Classification budget reached during email {email_id}, "
                            f"{batch.remaining} remaining")
                break
            except EmailNotFoundError:
                batch.failed += 1
                if len(batch.errors) < self.max_errors:
                    batch.errors.append(f"{email_id}: not found")
                continue
            except (MailsiftError, SQLAlchemyError) as e:
                batch.failed += 1
                logger.warning(f"Classification of {email_id} failed: {type(e).__name__}: {e}")
                if len(batch.errors) < self.max_errors:
                    batch.errors.append(f"{email_id}: {type(e).__name__}")
                continue
            batch.classified += 1
            batch.results[str(email_id)] = result

        logger.info(f"Batch classification: {batch.classified} classified, {batch.failed} failed, "
                    f"{batch.remaining} remaining")
        return batch

    async def classify_unclassified(self, user_id: str, limit: Optional[int] = None) -> BatchClassifyResult:
        """Classify the newest unclassified, non-deleted emails of a user."""
        size = min(limit or self.batch_size, self.batch_size)
        with self.store.session() as db:
            ids = EmailRepository(db).list_unclassified(user_id, size)
        batch = await self.classify_batch(ids)
        with self.store.session() as db:
            batch.remaining = EmailRepository(db).count_unclassified(user_id)
        return batch
