"""API token lookup for DNS provider calls."""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from flarewatcher.errors import CredentialMissing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenConfig:
    """A named provider token. ``token_env`` wins over an inline ``token``."""

    id: str
    name: str = ""
    token: str = ""
    token_env: str = ""


class CredentialResolver(ABC):
    """Abstract base class for credential lookup."""

    @abstractmethod
    def token_ids(self, operator_id: str) -> List[str]:
        """Token ids owned by the operator, in configured order."""
        pass

    @abstractmethod
    def resolve(self, operator_id: str, token_id: str) -> str:
        """Return the secret for a token. Raises CredentialMissing."""
        pass


class ConfigCredentialResolver(CredentialResolver):
    """Tokens declared in the YAML config, optionally read from the environment."""

    def __init__(
        self,
        tokens_by_operator: Mapping[str, List[TokenConfig]],
        environ: Optional[Mapping[str, str]] = None,
    ):
        self._tokens: Dict[str, List[TokenConfig]] = {
            operator_id: list(tokens) for operator_id, tokens in tokens_by_operator.items()
        }
        self._environ = environ if environ is not None else os.environ

    def token_ids(self, operator_id: str) -> List[str]:
        return [t.id for t in self._tokens.get(operator_id, [])]

    def resolve(self, operator_id: str, token_id: str) -> str:
        for token in self._tokens.get(operator_id, []):
            if token.id != token_id:
                continue
            secret = self._environ.get(token.token_env, "") if token.token_env else token.token
            if secret and secret.strip():
                return secret.strip()
            source = f"${token.token_env}" if token.token_env else "inline value"
            logger.error(f"Token '{token_id}' for operator '{operator_id}' is empty ({source})")
            break
        raise CredentialMissing(f"Cloudflare API token '{token_id}' not configured.")
