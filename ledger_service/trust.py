"""
Trust scoring for submitted events.

Everything here is a pure calculation: the intake path gathers the factors
(from the ledger and from out-of-band proof verification) and this module
turns them into a 0-100 score and a validation status.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional
from common.settings import TrustWeights, ValidationThresholds, settings


@dataclass
class TrustFactors:
    # None means the signal was not presented at all
    attestation_valid: Optional[bool] = None
    third_party_confirmed: Optional[bool] = None
    device_known: bool = False
    device_trusted: bool = False
    account_age_days: float = 0.0
    seconds_since_last_event: Optional[float] = None
    open_fraud_flags: int = 0
    confirmed_fraud: bool = False
    honeypot_triggered: bool = False


def calculate_trust_score(factors: TrustFactors, weights: TrustWeights = None) -> int:
    weights = weights or settings.trust_weights
    if factors.honeypot_triggered:
        return 0

    score = weights.baseline

    if factors.attestation_valid is True:
        score += weights.attestation_valid
    elif factors.attestation_valid is False:
        score += weights.attestation_invalid

    if factors.third_party_confirmed is True:
        score += weights.third_party_confirmed
    elif factors.third_party_confirmed is False:
        score += weights.third_party_unconfirmed

    if factors.device_known and factors.device_trusted:
        score += weights.device_trusted
    elif factors.device_known:
        score += weights.device_known
    else:
        score += weights.device_unknown

    # confirmed fraud keeps an account in the new-account bracket
    if factors.confirmed_fraud or factors.account_age_days < weights.new_account_days:
        score += weights.new_account
    elif factors.account_age_days < weights.established_account_days:
        score += weights.young_account
    else:
        score += weights.established_account

    spacing = factors.seconds_since_last_event
    if spacing is None or spacing >= 60:
        score += weights.spacing_normal
    elif spacing < 1:
        score += weights.spacing_burst
    elif spacing < 10:
        score += weights.spacing_rapid
    else:
        score += weights.spacing_quick

    if factors.open_fraud_flags > 0:
        score += weights.open_fraud_flags

    return max(0, min(100, score))


def status_for_score(score: int, thresholds: ValidationThresholds = None) -> str:
    thresholds = thresholds or settings.thresholds
    if score >= thresholds.validated:
        return "validated"
    if score >= thresholds.pending_review:
        return "pending_review"
    return "rejected"


def honeypot_triggered(trap_fields: Iterable[str], *payloads: Optional[Dict[str, Any]]) -> bool:
    """True when any trap field carries a truthy value; genuine clients never send them."""
    for payload in payloads:
        if not isinstance(payload, dict):
            continue
        for field in trap_fields:
            if payload.get(field):
                return True
    return False
