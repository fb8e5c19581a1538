"""
Contradiction detection — does the request agree with itself?

Seven independent checks, each emitting weighted signals that point
either toward a human or toward automation:

  1. Platform claim vs User-Agent (and UA self-contradictions)
  2. Accept-Language vs country
  3. Header order vs a canonical browser order, header casing
  4. Processing latency
  5. Browser fingerprint plausibility (Sec-CH-UA, brotli, DNT)
  6. Navigation (deep link without referer, same-origin referer)
  7. Accept / Connection headers

A validated click-id softens every bot signal to 40% of its weight:
paid clicks from iOS / WebViews show plenty of harmless quirks.
"""

import re
from dataclasses import dataclass, field, replace
from urllib.parse import urlparse

from app.core import thresholds as t
from app.core.context import RequestContext

_MOBILE_ONLY_UA = re.compile(r"android|iphone|mobile", re.IGNORECASE)
_TABLET_UA = re.compile(r"tablet|ipad", re.IGNORECASE)
_DESKTOP_OS_UA = re.compile(r"windows nt|macintosh|linux x86_64", re.IGNORECASE)
_TITLE_CASE = re.compile(r"^[A-Z][a-z]*(-[A-Z][a-z]*)*$")


@dataclass(frozen=True)
class ContradictionSignal:
    type: str
    expected: str
    observed: str
    weight: float
    is_human_indicator: bool


@dataclass(frozen=True)
class ContradictionResult:
    has_contradictions: bool
    human_likelihood: float
    bot_likelihood: float
    signals: tuple[ContradictionSignal, ...] = field(default_factory=tuple)

    @property
    def audit_signals(self) -> list[ContradictionSignal]:
        """Signals heavy enough to be persisted."""
        return [s for s in self.signals if s.weight >= t.AUDIT_SIGNAL_MIN_WEIGHT]


def _bot(kind: str, expected: str, observed: str, weight: float) -> ContradictionSignal:
    return ContradictionSignal(kind, expected, observed, weight, False)


def _human(kind: str, expected: str, observed: str, weight: float) -> ContradictionSignal:
    return ContradictionSignal(kind, expected, observed, weight, True)


class ContradictionDetector:
    """Stateless — one instance can serve concurrent requests."""

    def analyze(self, ctx: RequestContext, has_valid_click_id: bool = False) -> ContradictionResult:
        signals: list[ContradictionSignal] = []
        for check in (
            self._platform_user_agent,
            self._language_geo,
            self._header_order,
            self._timing,
            self._browser_fingerprint,
            self._navigation,
            self._accept_headers,
        ):
            signals.extend(check(ctx))

        if has_valid_click_id:
            signals = [
                s if s.is_human_indicator else replace(s, weight=s.weight * t.SOFTENING_FACTOR)
                for s in signals
            ]

        human_score = sum(s.weight for s in signals if s.is_human_indicator)
        bot_signals = [s for s in signals if not s.is_human_indicator]
        bot_score = sum(s.weight for s in bot_signals)
        total = human_score + bot_score

        human_likelihood = human_score / total if total > 0 else 0.5
        bot_likelihood = bot_score / total if total > 0 else 0.5

        if has_valid_click_id:
            significant = bool(bot_signals) and bot_likelihood > t.SIGNIFICANT_BOT_LIKELIHOOD
        else:
            significant = bool(bot_signals)

        return ContradictionResult(
            has_contradictions=significant,
            human_likelihood=min(human_likelihood, 1.0),
            bot_likelihood=min(bot_likelihood, 1.0),
            signals=tuple(signals),
        )

    # --- 1. Platform vs UA ---

    def _platform_user_agent(self, ctx: RequestContext) -> list[ContradictionSignal]:
        ua = ctx.user_agent or ""
        out: list[ContradictionSignal] = []

        if ctx.platform == "desktop":
            if _MOBILE_ONLY_UA.search(ua) and not _TABLET_UA.search(ua):
                out.append(_bot("platform_ua_mismatch", "Desktop UA for desktop platform",
                                "Mobile UA detected", 0.7))
            if re.search(r"linux", ua, re.I) and re.search(r"windows nt", ua, re.I):
                out.append(_bot("ua_self_contradiction", "Single OS in UA",
                                "Multiple OS indicators", 0.9))

        if ctx.platform == "mobile":
            if _DESKTOP_OS_UA.search(ua) and not re.search(r"mobile", ua, re.I):
                out.append(_bot("platform_ua_mismatch", "Mobile UA for mobile platform",
                                "Desktop UA detected", 0.6))

        chrome = re.search(r"chrome/(\d+)", ua, re.I)
        if chrome and int(chrome.group(1)) > t.MODERN_CHROME_VERSION and re.search(r"safari/\d{3}", ua, re.I):
            out.append(_human("ua_version_natural", "Consistent browser versioning",
                              "Natural Chrome+Safari versioning pattern", 0.3))
        return out

    # --- 2. Language vs geo ---

    def _language_geo(self, ctx: RequestContext) -> list[ContradictionSignal]:
        accept_lang = ctx.headers.get("accept-language", "")
        out: list[ContradictionSignal] = []

        expected = t.LANGUAGE_BY_COUNTRY.get((ctx.country or "").upper(), ())
        if expected and accept_lang:
            lower = accept_lang.lower()
            if any(lang in lower for lang in expected):
                out.append(_human("lang_geo_match", "Language matches geo",
                                  "Consistent language/location", 0.2))
            else:
                out.append(_bot("lang_geo_mismatch",
                                f"Language matching {ctx.country}: {', '.join(expected)}",
                                f"Accept-Language: {accept_lang[:50]}", 0.4))

        if "," in accept_lang:
            langs = accept_lang.split(",")
            if 2 <= len(langs) <= 5:
                out.append(_human("multi_lang_natural", "Multiple language preferences",
                                  f"{len(langs)} languages configured", 0.25))
        return out

    # --- 3. Header order + casing ---

    def _header_order(self, ctx: RequestContext) -> list[ContradictionSignal]:
        keys = ctx.headers.raw_keys()
        out: list[ContradictionSignal] = []
        if not keys:
            return out

        canonical = t.CANONICAL_HEADER_ORDER
        checked = matched = 0
        for i, key in enumerate(keys[: len(canonical)]):
            normalized = key.upper().replace("_", "-")
            if normalized in canonical:
                checked += 1
                if abs(canonical.index(normalized) - i) <= t.HEADER_ORDER_TOLERANCE:
                    matched += 1

        if checked:
            order_score = matched / checked
            if order_score > t.HEADER_ORDER_TYPICAL:
                out.append(_human("header_order_typical", "Typical browser header order",
                                  f"Order match: {order_score:.0%}", 0.2))
            elif order_score < t.HEADER_ORDER_ATYPICAL:
                out.append(_bot("header_order_atypical", "Typical browser header order",
                                f"Order match: {order_score:.0%}", 0.5))

        consistency = header_case_consistency(keys)
        if consistency < t.HEADER_CASE_MIN_CONSISTENCY:
            out.append(_bot("header_case_inconsistent", "Consistent header casing",
                            f"Mixed casing pattern ({consistency:.0%} consistent)", 0.3))
        elif len(keys) > 1 and consistency == 1.0:
            out.append(_human("header_case_consistent", "Consistent header casing",
                              "Uniform casing across all headers", 0.1))
        return out

    # --- 4. Timing ---

    def _timing(self, ctx: RequestContext) -> list[ContradictionSignal]:
        if ctx.request_started_ms <= 0:
            return []  # caller did not measure
        elapsed = ctx.processing_ms
        lo, hi = t.TIMING_NATURAL_MS
        if elapsed < t.TIMING_TOO_FAST_MS:
            return [_bot("timing_too_fast", f"Human-like request timing (>{t.TIMING_TOO_FAST_MS}ms)",
                         f"Request processed in {elapsed:.0f}ms", 0.6)]
        if lo <= elapsed <= hi:
            return [_human("timing_natural", "Natural timing range",
                           f"Request took {elapsed:.0f}ms", 0.15)]
        return []

    # --- 5. Browser fingerprint ---

    def _browser_fingerprint(self, ctx: RequestContext) -> list[ContradictionSignal]:
        ua = ctx.user_agent or ""
        headers = ctx.headers
        out: list[ContradictionSignal] = []

        is_chrome = bool(re.search(r"chrome", ua, re.I)) and not re.search(r"edg|opr", ua, re.I)
        is_firefox = bool(re.search(r"firefox", ua, re.I))

        if is_chrome and not headers.get("sec-ch-ua"):
            version = re.search(r"chrome/(\d+)", ua, re.I)
            if version and int(version.group(1)) >= t.MODERN_CHROME_VERSION:
                out.append(_bot("missing_sec_ch_ua", "Sec-CH-UA header for modern Chrome",
                                "Header missing", 0.4))

        encoding = headers.get("accept-encoding", "")
        if is_chrome and encoding and "br" not in encoding:
            out.append(_bot("missing_brotli", "Brotli support in modern Chrome",
                            f"Accept-Encoding: {encoding}", 0.3))

        if is_firefox and headers.get("dnt") == "1":
            out.append(_human("firefox_dnt", "DNT is a privacy-conscious setting",
                              "DNT enabled", 0.2))
        return out

    # --- 6. Navigation ---

    def _navigation(self, ctx: RequestContext) -> list[ContradictionSignal]:
        referer = ctx.referer or ""
        path = ctx.request_path or "/"
        out: list[ContradictionSignal] = []

        if not referer and path != "/" and "index" not in path:
            out.append(_bot("deep_direct_access", "Referer for deep page access",
                            f"Direct access to {path[:100]} without referer", 0.35))

        if referer:
            ref_host = urlparse(referer).hostname or ""
            host = (ctx.headers.get("host", "") or "").split(":")[0].lower()
            if ref_host and host and (ref_host == host or ref_host.endswith("." + host)):
                out.append(_human("internal_referer", "Internal navigation",
                                  "Navigating from same site", 0.25))
        return out

    # --- 7. Accept / Connection ---

    def _accept_headers(self, ctx: RequestContext) -> list[ContradictionSignal]:
        accept = ctx.headers.get("accept", "")
        out: list[ContradictionSignal] = []

        if accept == "*/*":
            out.append(_bot("generic_accept", "Specific Accept header for browser",
                            "Generic */* accept", 0.4))
        if "text/html" in accept and "application/xhtml+xml" in accept:
            out.append(_human("browser_accept", "Browser-like Accept header",
                              "Standard browser Accept pattern", 0.15))

        if ctx.headers.get("connection", "").lower() == "keep-alive":
            out.append(_human("keepalive_connection", "Persistent connection",
                              "Keep-alive enabled", 0.1))
        return out


def header_case_consistency(keys: list[str]) -> float:
    """Share of header keys following the dominant casing convention."""
    if not keys:
        return 1.0
    upper = sum(1 for k in keys if k == k.upper())
    lower = sum(1 for k in keys if k == k.lower())
    title = sum(1 for k in keys if _TITLE_CASE.match(k))
    return max(upper, lower, title) / len(keys)
