"""Secret value generation and version bookkeeping."""

import secrets
from typing import Any, Dict, Optional

from converge.providers.base import DesiredResource
from converge.resources.models import GeneratePolicy, Secret
from converge.state.models import StateRecord
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class SecretMaterializer:
    """Decides when a secret gets a new value and produces it.

    A secret is (re)written only when it is first created or when the policy
    that determines its value changes. Any other update leaves the current
    version untouched, so dependents never observe rotation on unrelated runs.
    """

    def __init__(self, rng: Optional[secrets.SystemRandom] = None):
        self._random = rng or secrets.SystemRandom()

    def generate(self, policy: GeneratePolicy) -> str:
        """Random value with at least one character of every enabled class."""
        policy.validate()
        classes = policy.character_classes()
        alphabet = "".join(classes)

        chars = [self._random.choice(charset) for charset in classes]
        chars.extend(self._random.choice(alphabet) for _ in range(policy.length - len(chars)))
        self._random.shuffle(chars)
        return "".join(chars)

    def needs_new_value(
        self,
        secret: Secret,
        record: Optional[StateRecord],
        resolved_attributes: Optional[Dict[str, Any]] = None
    ) -> bool:
        if record is None:
            return True
        return record.policy_fingerprint != secret.policy_fingerprint(resolved_attributes)

    def prepare(
        self,
        secret: Secret,
        record: Optional[StateRecord],
        resolved_attributes: Dict[str, Any]
    ) -> DesiredResource:
        """Build the adapter payload for a secret create/update.

        The payload carries ``value`` only when a new version must be written.
        """
        attributes = {k: v for k, v in resolved_attributes.items() if k not in ("generate", "value")}

        if self.needs_new_value(secret, record, resolved_attributes):
            policy = secret.policy
            if policy is not None:
                attributes["value"] = self.generate(policy)
                logger.info(f"Generated new value for {secret.key} ({policy.length} chars)")
            else:
                attributes["value"] = resolved_attributes.get("value")
                logger.info(f"Writing supplied value for {secret.key}")
        else:
            logger.debug(f"Keeping current version of {secret.key}")

        return DesiredResource(kind=secret.kind, name=secret.name, attributes=attributes)
