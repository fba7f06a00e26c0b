"""
Metered OpenAI client wrapper.

Charges the user's token ledger before every generation.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..config.loader import QuotaConfig, default_quota_config
from ..core.ledger import ConsumptionResult, TokenLedgerService, UsageContext
from ..core.plans import Plan
from ..core.tier_resolver import resolve_tier
from ..core.token_cost import calculate_token_cost
from ..storage.accounts import AccountDirectory
from ..storage.db import DEFAULT_DB_PATH


class MeteredOpenAI:
    """OpenAI client wrapper that consumes tokens per generation.

    Each call resolves the user's tier fresh, derives the token cost from
    language and study mode, and consumes it before the model is called.
    A failed consumption raises and the model is never called.
    """

    def __init__(
        self,
        user_id: str,
        model: str,
        feature: str,
        db_path: Optional[str] = None,
        config: Optional[QuotaConfig] = None,
        identifier: Optional[str] = None
    ):
        """Initialize metered OpenAI client.

        Args:
            user_id: User the generation is billed to (required)
            model: OpenAI model name (required)
            feature: Feature identifier for usage history (required)
            db_path: Database file path (defaults to "token_quota.db")
            config: Quota configuration (defaults to the built-in plans)
            identifier: Ledger identifier, defaults to user_id; anonymous
                callers pass their session id here

        Raises:
            ValueError: If user_id, model or feature is missing/empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not feature or not feature.strip():
            raise ValueError("feature is required and cannot be empty")

        self.user_id = user_id
        self.model = model
        self.feature = feature
        self.identifier = identifier or user_id
        self.db_path = db_path or DEFAULT_DB_PATH
        self.config = config or default_quota_config()
        self.ledger = TokenLedgerService(self.db_path, self.config)
        self.directory = AccountDirectory(self.db_path)
        self.client = OpenAI()
        self.last_consumption: Optional[ConsumptionResult] = None

    def resolve_plan(self) -> Plan:
        """Resolve the user's current tier."""
        return resolve_tier(self.user_id, self.directory, self.config.trial)

    def chat(
        self,
        messages: List[Dict[str, str]],
        language: str = "en",
        study_mode: str = "standard",
        **kwargs: Any
    ) -> Any:
        """Create chat completion after consuming the generation's tokens.

        Args:
            messages: List of message dictionaries (required)
            language: Output language, drives the token cost
            study_mode: Study mode, scales the token cost
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the study mode is unknown
            InsufficientTokens: If the ledger cannot cover the cost
            LockTimeout: If the ledger stayed locked past the timeout
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        cost = calculate_token_cost(language, study_mode, self.config.token_costs)
        plan = self.resolve_plan()

        result = self.ledger.consume(
            self.identifier,
            plan,
            cost,
            UsageContext(
                feature_name=self.feature,
                operation_type="chat_completion",
                language=language,
                study_mode=study_mode
            )
        )
        self.last_consumption = result
        result.raise_for_failure()

        return self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs
        )
