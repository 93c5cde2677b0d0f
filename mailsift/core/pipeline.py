"""
Mail pipeline facade.

Wires the store, credential vault, sync coordinator, classification
engine, reputation store and feedback loop once, and exposes the
operations the API and the CLI call. Every component receives its
dependencies explicitly; nothing here reads module-level state.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging

from mailsift.core.ai.classifier import (
    BatchClassifyResult,
    ClassificationEngine,
    ClassifierClient,
    LangChainClassifierClient,
)
from mailsift.core.ai.schemas import ClassificationResult
from mailsift.core.credentials import (
    CredentialVault,
    GoogleTokenRefresher,
    MicrosoftTokenRefresher,
    TokenRefresher,
)
from mailsift.core.database import AccountRepository, Store
from mailsift.core.email.body_loader import BodyLoader
from mailsift.core.email.prefilter import RulePrefilter
from mailsift.core.feedback import FeedbackLoop, FeedbackOutcome, LearnedRules
from mailsift.core.providers import AdapterFactory, BodyContent
from mailsift.core.providers.factory import PROVIDER_GMAIL, PROVIDER_IMAP, SUPPORTED_PROVIDERS
from mailsift.core.reputation import RebuildResult, ReputationSnapshot, ReputationStore
from mailsift.core.sync import AccountSyncResult, AccountView, SyncAllResult, SyncCoordinator

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    """A sync run plus the classification of what it brought in."""
    sync: Any  # AccountSyncResult | SyncAllResult
    classification: Optional[BatchClassifyResult] = None

    def to_dict(self) -> Dict:
        data = self.sync.to_dict()
        data['classified'] = self.classification.classified if self.classification else 0
        return data


def build_refreshers(settings) -> Dict[str, TokenRefresher]:
    """Token refreshers per provider kind, for the OAuth apps that are configured."""
    refreshers: Dict[str, TokenRefresher] = {}
    if settings.google_client_id and settings.google_client_secret:
        refreshers[PROVIDER_GMAIL] = GoogleTokenRefresher(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            token_url=settings.google_token_url,
        )
    if settings.microsoft_client_id:
        refreshers[PROVIDER_IMAP] = MicrosoftTokenRefresher(
            client_id=settings.microsoft_client_id,
            client_secret=settings.microsoft_client_secret,
            tenant_id=settings.microsoft_tenant_id,
        )
    return refreshers


def build_classifier_client(settings) -> Optional[ClassifierClient]:
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set - model classifications will use the fallback result")
        return None
    return LangChainClassifierClient.from_settings(settings)


class MailPipeline:
    """Entry point for sync, classification, feedback and reputation operations."""

    def __init__(self,
                 store: Store,
                 vault: CredentialVault,
                 coordinator: SyncCoordinator,
                 engine: ClassificationEngine,
                 reputation: ReputationStore,
                 feedback: FeedbackLoop,
                 body_loader: BodyLoader,
                 classify_after_sync: bool = True,
                 classify_after_sync_limit: int = 20):
        self.store = store
        self.vault = vault
        self.coordinator = coordinator
        self.engine = engine
        self.reputation = reputation
        self.feedback = feedback
        self.body_loader = body_loader
        self.classify_after_sync = classify_after_sync
        self.classify_after_sync_limit = classify_after_sync_limit

    @classmethod
    def from_settings(cls,
                      settings,
                      store: Optional[Store] = None,
                      vault: Optional[CredentialVault] = None,
                      adapter_factory: Optional[AdapterFactory] = None,
                      refreshers: Optional[Dict[str, TokenRefresher]] = None,
                      classifier_client: Optional[ClassifierClient] = None,
                      prefilter: Optional[RulePrefilter] = None) -> "MailPipeline":
        """
        Build every component from settings; any piece can be injected
        (tests pass an in-memory Store, fake adapters and a fake classifier).
        """
        store = store or Store.from_settings(settings)
        vault = vault or CredentialVault.from_settings(settings)
        adapter_factory = adapter_factory or AdapterFactory.from_settings(settings)
        if refreshers is None:
            refreshers = build_refreshers(settings)
        if classifier_client is None:
            classifier_client = build_classifier_client(settings)

        coordinator = SyncCoordinator.from_settings(settings, store, vault, adapter_factory, refreshers)
        reputation = ReputationStore.from_settings(settings, store)
        feedback = FeedbackLoop.from_settings(settings, store, reputation)
        engine = ClassificationEngine.from_settings(
            settings, store, reputation,
            prefilter=prefilter or RulePrefilter.from_config(),
            client=classifier_client,
            on_model_classification=feedback.observe_classification,
        )
        body_loader = BodyLoader(store, adapter_factory, coordinator.resolve_credentials)
        return cls(
            store=store,
            vault=vault,
            coordinator=coordinator,
            engine=engine,
            reputation=reputation,
            feedback=feedback,
            body_loader=body_loader,
            classify_after_sync=settings.classify_after_sync,
            classify_after_sync_limit=settings.classify_after_sync_limit,
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def _classify_new(self, email_ids: List) -> Optional[BatchClassifyResult]:
        if not self.classify_after_sync or not email_ids:
            return None
        batch = await self.engine.classify_batch(list(email_ids)[:self.classify_after_sync_limit])
        logger.info(f"Classified {batch.classified}/{len(email_ids)} newly synced emails")
        return batch

    async def trigger_sync(self, account_id, limit: Optional[int] = None, full_sync: bool = False) -> SyncOutcome:
        result: AccountSyncResult = await self.coordinator.sync_account(account_id, limit=limit, full_sync=full_sync)
        return SyncOutcome(result, await self._classify_new(result.new_email_ids))

    async def trigger_sync_all(self, user_id: str, limit: Optional[int] = None,
                               full_sync: bool = False) -> SyncOutcome:
        result: SyncAllResult = await self.coordinator.sync_user(user_id, limit=limit, full_sync=full_sync)
        return SyncOutcome(result, await self._classify_new(result.new_email_ids))

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    async def classify(self, email_id) -> ClassificationResult:
        return await self.engine.classify(email_id)

    async def classify_batch(self, email_ids: List) -> BatchClassifyResult:
        return await self.engine.classify_batch(email_ids)

    async def classify_unclassified(self, user_id: str, limit: Optional[int] = None) -> BatchClassifyResult:
        return await self.engine.classify_unclassified(user_id, limit)

    async def get_body(self, email_id) -> BodyContent:
        return await self.body_loader.get_body(email_id)

    # ------------------------------------------------------------------
    # Feedback and reputation
    # ------------------------------------------------------------------

    def submit_feedback(self, email_id, corrected_category: str,
                        original_category: Optional[str] = None) -> FeedbackOutcome:
        return self.feedback.record_correction(email_id, original_category, corrected_category)

    def accuracy(self, user_id: str) -> Dict[str, Dict]:
        return self.feedback.accuracy_by_category(user_id)

    def learned_rules(self, user_id: str) -> LearnedRules:
        return self.feedback.learned_rule_suggestions(user_id)

    def get_reputation(self, user_id: str, key: str) -> ReputationSnapshot:
        return self.reputation.get_reputation(user_id, key)

    def record_event(self, user_id: str, sender: str, event: str,
                     category: Optional[str] = None) -> ReputationSnapshot:
        return self.reputation.record_event(user_id, sender, event, category=category)

    def set_domain_list(self, user_id: str, domain: str, flag: str) -> ReputationSnapshot:
        return self.reputation.set_domain_list_flag(user_id, domain, flag)

    def rebuild_reputation(self, user_id: str, resume_after: Optional[str] = None) -> RebuildResult:
        return self.reputation.rebuild(user_id, resume_after=resume_after)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def link_account(self, user_id: str, email_address: str, provider: str,
                     credentials: Dict[str, Any], **fields) -> AccountView:
        """
        Store a new source account with encrypted credentials.

        Raises:
            ValueError: Unknown provider
            CredentialError: Vault not configured
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider '{provider}'. Use one of: {', '.join(SUPPORTED_PROVIDERS)}")
        blob = self.vault.encrypt(credentials)
        with self.store.session() as db:
            account = AccountRepository(db).create(user_id, email_address, provider, blob, **fields)
            return AccountView.from_row(account)

    def reactivate_account(self, account_id, credentials: Optional[Dict[str, Any]] = None) -> AccountView:
        """Re-enable a disabled account, optionally with new credentials."""
        blob = self.vault.encrypt(credentials) if credentials else None
        with self.store.session() as db:
            accounts = AccountRepository(db)
            accounts.reactivate(account_id, blob)
            db.flush()
            account = accounts.get(account_id)
            db.refresh(account)
            logger.info(f"Reactivated account {account_id}")
            return AccountView.from_row(account)

    def close(self):
        self.store.dispose()
