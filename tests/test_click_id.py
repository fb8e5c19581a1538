"""Tests for click-id extraction and validation."""

import random

import pytest
from app.core.click_id import (
    DEFAULT_NETWORK_RULES,
    EXCESSIVE_REPETITION,
    LOW_ENTROPY,
    NO_CLICK_ID,
    REFERER_MISMATCH,
    REUSED,
    SUSPICIOUS_PATTERN,
    TOO_LONG,
    TOO_SHORT,
    NetworkRule,
    fingerprint,
    mark_reuse,
    referer_matches,
    rules_unavailable_evidence,
    shannon_entropy,
    validate_click_id,
)

from conftest import FBCLID, GCLID


def _validate(params, referer=None, rules=DEFAULT_NETWORK_RULES):
    return validate_click_id(params, referer, rules)


class TestEntropy:
    def test_empty_string_is_zero(self):
        assert shannon_entropy("") == 0.0

    def test_single_symbol_is_zero(self):
        assert shannon_entropy("aaaa") == 0.0

    def test_known_values(self):
        assert shannon_entropy("abcd") == pytest.approx(2.0)
        assert shannon_entropy("aabb") == pytest.approx(1.0)

    def test_permutation_invariant(self):
        chars = list(GCLID + "zzz")
        random.Random(7).shuffle(chars)
        assert shannon_entropy("".join(chars)) == pytest.approx(shannon_entropy(GCLID + "zzz"))


class TestValidation:
    def test_valid_gclid(self):
        ev = _validate({"gclid": GCLID})
        assert ev.has_click_id
        assert ev.is_valid
        assert ev.network == "google_ads"
        assert ev.length == 22
        assert ev.entropy > 4.2
        assert ev.validation_errors == ()

    @pytest.mark.parametrize("length", range(1, 20))
    def test_short_ids_always_too_short(self, length):
        ev = _validate({"gclid": (GCLID * 2)[:length]})
        assert TOO_SHORT in ev.validation_errors
        assert not ev.is_valid

    def test_too_long_for_microsoft(self):
        ev = _validate({"msclkid": (GCLID * 3)[:65]})
        assert ev.network == "microsoft_ads"
        assert ev.validation_errors == (TOO_LONG,)

    def test_low_entropy(self):
        ev = _validate({"gclid": "ab" * 11 + "AB"})
        assert ev.validation_errors == (LOW_ENTROPY,)

    def test_all_lowercase_is_suspicious(self):
        ev = _validate({"gclid": "abcdefghijklmnopqrstuvwxy"})
        assert ev.validation_errors == (SUSPICIOUS_PATTERN,)

    def test_all_digits_is_suspicious(self):
        ev = _validate({"gclid": "1234567890123456789012"})
        assert SUSPICIOUS_PATTERN in ev.validation_errors

    def test_run_of_six_identical_chars(self):
        ev = _validate({"gclid": GCLID[:10] + "zzzzzz" + GCLID[10:]})
        assert ev.validation_errors == (EXCESSIVE_REPETITION,)

    def test_missing_referer_tolerated_when_not_required(self):
        ev = _validate({"gclid": GCLID}, referer=None)
        assert ev.is_valid
        assert ev.referer_match is False

    def test_required_referer(self):
        rules = (NetworkRule("partner", "pclid", 20, 200, 3.0,
                             requires_referer=True, referer_pattern=r"partner\.com"),)
        assert _validate({"pclid": GCLID}, None, rules).validation_errors == (REFERER_MISMATCH,)
        assert _validate({"pclid": GCLID}, "https://ads.partner.com/c", rules).is_valid

    def test_highest_priority_wins(self):
        ev = _validate({"fbclid": FBCLID, "gclid": GCLID})
        assert ev.network == "google_ads"
        assert ev.click_id == GCLID

    def test_empty_parameter_skipped(self):
        ev = _validate({"gclid": "", "fbclid": FBCLID})
        assert ev.network == "meta_ads"

    def test_no_click_id(self):
        ev = _validate({"utm_source": "google", "utm_medium": "cpc"})
        assert ev.has_click_id is False
        assert ev.is_valid is False
        assert ev.validation_errors == (NO_CLICK_ID,)


class TestReuse:
    def test_first_sighting_stays_valid(self):
        ev = mark_reuse(_validate({"gclid": GCLID}), 1)
        assert ev.is_valid
        assert ev.hit_count == 1

    def test_second_sighting_is_reused(self):
        ev = mark_reuse(_validate({"gclid": GCLID}), 2)
        assert ev.is_reused
        assert not ev.is_valid
        assert ev.validation_errors == (REUSED,)

    def test_reuse_flag_not_duplicated(self):
        ev = mark_reuse(mark_reuse(_validate({"gclid": GCLID}), 2), 3)
        assert ev.validation_errors.count(REUSED) == 1
        assert ev.hit_count == 3


def test_rules_unavailable_fails_closed():
    ev = rules_unavailable_evidence()
    assert ev.rules_unavailable
    assert not ev.has_click_id
    assert not ev.is_valid


def test_bad_referer_pattern_does_not_raise():
    assert referer_matches("https://example.com", "(unclosed") is False


def test_fingerprint_truncates():
    assert fingerprint(GCLID) == "aB3dE5…"
    assert fingerprint(None) is None
    assert fingerprint("abc") == "abc"
