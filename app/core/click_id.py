"""
Click-ID validation — the economic-value gate.

UTMs are trivial to forge. An ad-network click identifier (gclid, fbclid,
ttclid, ...) is the only thing that proves a paid click happened, so it is
checked first and everything downstream keys off the result:

  1. Pick the highest-priority rule whose parameter is present
  2. Shannon entropy of the identifier (bits/char)
  3. Length bounds, entropy floor, referer (only when the rule requires it)
  4. Forgery patterns: all-lowercase / all-digits, runs of 6+ identical chars
  5. Record the sighting; a hit_count > 1 means the identifier is recycled

Nothing here raises on bad input. Failures are reported as error codes.
"""

import math
import re
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

import structlog

logger = structlog.get_logger()

# Error codes
NO_CLICK_ID = "no_click_id"
FAILED_TO_LOAD_RULES = "failed_to_load_rules"
TOO_SHORT = "click_id_too_short"
TOO_LONG = "click_id_too_long"
LOW_ENTROPY = "low_entropy"
REFERER_MISMATCH = "referer_mismatch"
SUSPICIOUS_PATTERN = "suspicious_pattern"
EXCESSIVE_REPETITION = "excessive_repetition"
REUSED = "reused"

_SINGLE_CLASS = re.compile(r"^(?:[a-z]+|[0-9]+)$")
_REPETITION = re.compile(r"(.)\1{5,}")


@dataclass(frozen=True)
class NetworkRule:
    network: str
    click_id_param: str
    min_length: int
    max_length: int
    min_entropy: float
    requires_referer: bool = False
    referer_pattern: str | None = None
    priority: int = 0


@dataclass(frozen=True)
class ClickIdEvidence:
    has_click_id: bool = False
    network: str | None = None
    click_id: str | None = None
    entropy: float = 0.0
    length: int = 0
    referer_match: bool = False
    validation_errors: tuple[str, ...] = ()
    hit_count: int = 0

    @property
    def is_valid(self) -> bool:
        return self.has_click_id and not self.validation_errors

    @property
    def is_reused(self) -> bool:
        return REUSED in self.validation_errors

    @property
    def rules_unavailable(self) -> bool:
        return FAILED_TO_LOAD_RULES in self.validation_errors


DEFAULT_NETWORK_RULES: tuple[NetworkRule, ...] = (
    NetworkRule("google_ads", "gclid", 20, 200, 3.5,
                referer_pattern=r"google\.|doubleclick\.|googleadservices\.", priority=100),
    NetworkRule("meta_ads", "fbclid", 20, 300, 3.5,
                referer_pattern=r"facebook\.|instagram\.|fb\.", priority=90),
    NetworkRule("tiktok_ads", "ttclid", 20, 300, 3.5,
                referer_pattern=r"tiktok\.", priority=80),
    NetworkRule("microsoft_ads", "msclkid", 20, 64, 3.0,
                referer_pattern=r"bing\.|microsoft\.", priority=70),
    NetworkRule("generic", "click_id", 20, 200, 3.0, priority=10),
)


def shannon_entropy(value: str) -> float:
    """H = -sum(p * log2 p) over character frequencies. 0.0 for empty input."""
    n = len(value)
    if n == 0:
        return 0.0
    h = 0.0
    for count in Counter(value).values():
        p = count / n
        h -= p * math.log2(p)
    return h


def extract_click_id(
    params: Mapping[str, str],
    rules: Iterable[NetworkRule],
) -> tuple[NetworkRule, str] | None:
    """Highest-priority rule whose (non-empty) parameter is present."""
    for rule in sorted(rules, key=lambda r: r.priority, reverse=True):
        value = params.get(rule.click_id_param)
        if value:
            return rule, value
    return None


def referer_matches(referer: str | None, pattern: str | None) -> bool:
    if not pattern:
        return True
    if not referer:
        return False
    try:
        return re.search(pattern, referer, re.IGNORECASE) is not None
    except re.error:
        logger.warning("bad_referer_pattern", pattern=pattern)
        return False


def validate_click_id(
    params: Mapping[str, str],
    referer: str | None,
    rules: Iterable[NetworkRule],
) -> ClickIdEvidence:
    """Evaluate the click identifier carried by a query string. Pure."""
    extracted = extract_click_id(params, rules)
    if extracted is None:
        return ClickIdEvidence(validation_errors=(NO_CLICK_ID,))

    rule, click_id = extracted
    errors: list[str] = []

    if len(click_id) < rule.min_length:
        errors.append(TOO_SHORT)
    if len(click_id) > rule.max_length:
        errors.append(TOO_LONG)

    entropy = shannon_entropy(click_id)
    if entropy < rule.min_entropy:
        errors.append(LOW_ENTROPY)

    # iOS Safari / in-app WebViews routinely drop the referer on ad clicks.
    # Absence only counts when the rule insists on it.
    ref_ok = referer_matches(referer, rule.referer_pattern)
    if rule.requires_referer and not ref_ok:
        errors.append(REFERER_MISMATCH)

    if _SINGLE_CLASS.match(click_id):
        errors.append(SUSPICIOUS_PATTERN)
    if _REPETITION.search(click_id):
        errors.append(EXCESSIVE_REPETITION)

    return ClickIdEvidence(
        has_click_id=True,
        network=rule.network,
        click_id=click_id,
        entropy=entropy,
        length=len(click_id),
        referer_match=ref_ok,
        validation_errors=tuple(errors),
    )


def mark_reuse(evidence: ClickIdEvidence, hit_count: int) -> ClickIdEvidence:
    """Fold the post-sighting hit count in; hit_count > 1 invalidates."""
    errors = evidence.validation_errors
    if hit_count > 1 and REUSED not in errors:
        errors = errors + (REUSED,)
    return replace(evidence, hit_count=hit_count, validation_errors=errors)


def rules_unavailable_evidence() -> ClickIdEvidence:
    """Fail closed: a broken rule set is treated as no click-id at all."""
    return ClickIdEvidence(validation_errors=(FAILED_TO_LOAD_RULES, NO_CLICK_ID))


def fingerprint(click_id: str | None) -> str | None:
    """Log-safe prefix of an identifier."""
    if not click_id:
        return None
    return click_id[:6] + "…" if len(click_id) > 6 else click_id
