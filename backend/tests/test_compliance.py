"""
Tests for the compliance layer: terms registry, consent tracker, identity,
proxy pool and the gateway that combines them.
"""

from datetime import datetime, timedelta

import pytest

from planning_scrapers.compliance import (
    AgentIdentity,
    ComplianceGateway,
    ConsentRecord,
    ConsentTracker,
    ProxyEntry,
    ProxyPool,
    RequestStatus,
    RobotsChecker,
    SiteTerms,
    TermsOutcome,
    TermsRegistry,
)
from planning_scrapers.compliance.consent import ConsentType
from planning_scrapers.compliance.terms import Permission, domain_of, is_council_domain
from planning_scrapers.errors import ComplianceBlockedError
from planning_scrapers.models import AccessMethod

from fakes import FakeFetcher, make_gateway

COUNCIL_URL = "https://publicaccess.barnet.gov.uk/online-applications/search.do"

# =============================================================================
# Terms
# =============================================================================

class TestTermsRegistry:
    def test_domain_of_strips_www_and_port(self):
        assert domain_of("https://www.tfl.gov.uk:443/x") == "tfl.gov.uk"
        assert domain_of("WWW.Example.org") == "example.org"

    def test_council_domain_heuristic(self):
        assert is_council_domain("publicaccess.barnet.gov.uk")
        assert is_council_domain("planning.anytown-council.gov.uk")
        assert not is_council_domain("barnet.example.com")

    def test_prohibited_site(self):
        result = TermsRegistry().validate("https://tfl.gov.uk/status")
        assert not result.compliant
        assert result.api_available
        decision = TermsRegistry().decide("https://tfl.gov.uk/status")
        assert decision.outcome == TermsOutcome.PROHIBITED
        assert "api.tfl.gov.uk" in decision.alternatives[0]

    def test_restricted_site_with_api_prefers_api(self):
        decision = TermsRegistry().decide("https://landregistry.gov.uk/app")
        assert decision.outcome == TermsOutcome.USE_API

    def test_council_domain_is_compliant_with_attribution(self):
        result = TermsRegistry().validate(COUNCIL_URL)
        assert result.compliant
        assert result.requires_attribution
        assert not result.manual_review

    def test_unknown_domain_needs_manual_review(self):
        result = TermsRegistry().validate("https://random-site.co.uk/")
        assert result.compliant
        assert result.manual_review

    def test_extra_terms_override(self):
        registry = TermsRegistry([SiteTerms.from_dict({"domain": "www.planningportal.co.uk", "scraping": "prohibited"})])
        assert registry.get_site_terms("planningportal.co.uk").scraping == Permission.PROHIBITED
        assert not registry.validate("https://planningportal.co.uk/x").compliant


# =============================================================================
# Consent
# =============================================================================

class TestConsentTracker:
    def test_government_domains_never_need_consent(self):
        tracker = ConsentTracker()
        requirement = tracker.is_consent_required("publicaccess.barnet.gov.uk")
        assert not requirement.required

    def test_commercial_domain_requires_consent(self):
        requirement = ConsentTracker().is_consent_required("rightmove.co.uk")
        assert requirement.required
        assert requirement.method == "email"

    def test_default_public_data_consents(self):
        tracker = ConsentTracker()
        assert tracker.has_consent("landregistry.gov.uk")
        assert tracker.has_consent("www.epc.opendatacommunities.org")

    def test_expired_consent_is_not_valid(self):
        now = datetime(2024, 6, 1)
        tracker = ConsentTracker(
            records=[ConsentRecord(
                domain="example.com", consent_type=ConsentType.EXPLICIT, granted=True,
                expires_at=now - timedelta(days=1),
            )],
            clock=lambda: now,
        )
        assert not tracker.has_consent("example.com")
        assert tracker.compliance_report()["compliance"]["issues"] == ["1 consent(s) have expired"]

    def test_revoke(self):
        tracker = ConsentTracker(include_defaults=False)
        tracker.add_consent(ConsentRecord(domain="www.Example.com", consent_type=ConsentType.EXPLICIT, granted=True))
        assert tracker.has_consent("example.com")
        assert tracker.revoke_consent("example.com", "owner asked")
        assert not tracker.has_consent("example.com")
        assert not tracker.revoke_consent("nope.com")

    def test_approved_request_grants_consent(self):
        tracker = ConsentTracker(include_defaults=False)
        request_id = tracker.track_request("agentsite.co.uk")
        assert not tracker.has_consent("agentsite.co.uk")

        request = tracker.update_request_status(request_id, RequestStatus.APPROVED, valid_for_days=365)
        assert request.status == RequestStatus.APPROVED
        assert tracker.has_consent("agentsite.co.uk")
        assert tracker.get_consent("agentsite.co.uk").expires_at is not None

    def test_unknown_request_id(self):
        assert ConsentTracker().update_request_status("req_missing", "denied") is None

    def test_consent_email_names_bot_and_domain(self):
        identity = AgentIdentity(contact_email="team@planning.example.org")
        email = ConsentTracker().generate_consent_email("agentsite.co.uk", identity=identity)
        assert "agentsite.co.uk" in email
        assert identity.user_agent in email
        assert "team@planning.example.org" in email

    def test_record_round_trips_through_dict(self):
        record = ConsentRecord.from_dict({"domain": "WWW.Example.com", "consent_type": "tos"})
        assert record.domain == "example.com"
        assert record.consent_type == ConsentType.TOS
        assert record.granted


# =============================================================================
# Identity
# =============================================================================

class TestAgentIdentity:
    def test_user_agent_identifies_bot(self):
        identity = AgentIdentity(bot_name="PlanBot", version="2.0", website="https://x.org", contact_email="a@x.org")
        assert identity.user_agent == "PlanBot/2.0 (+https://x.org; a@x.org)"
        assert identity.is_identifying(identity.user_agent)
        assert not identity.is_identifying("Mozilla/5.0")

    def test_headers_include_contact_and_referer(self):
        headers = AgentIdentity().headers(referer="https://a.gov.uk")
        assert headers["From"] == AgentIdentity().contact_email
        assert headers["Referer"] == "https://a.gov.uk"
        assert "X-Robot-Name" in headers

    def test_override(self):
        identity = AgentIdentity(user_agent_override="Custom/1.0 (+ops@x.org)")
        assert identity.user_agent == "Custom/1.0 (+ops@x.org)"


# =============================================================================
# Proxies
# =============================================================================

class TestProxyPool:
    def test_below_threshold_rejected(self):
        pool = ProxyPool(min_ethical_score=80, include_direct=False)
        assert not pool.add_proxy(ProxyEntry(url="http://cheap:8080", ethical_score=40))
        assert pool.select() is None

    def test_direct_entry_available_by_default(self):
        entry = ProxyPool().select()
        assert entry.is_direct

    def test_round_robin_across_eligible(self):
        pool = ProxyPool(
            [ProxyEntry(url="http://a:1", ethical_score=90), ProxyEntry(url="http://b:1", ethical_score=95)],
            include_direct=False,
        )
        picked = {pool.select().url for _ in range(4)}
        assert picked == {"http://a:1", "http://b:1"}

    def test_blocked_after_poor_success_rate(self):
        pool = ProxyPool([ProxyEntry(url="http://a:1", ethical_score=90)], include_direct=False)
        for _ in range(11):
            pool.record_outcome("http://a:1", success=False, response_time=0.1)
        assert pool.select() is None
        report = pool.usage_report()
        assert report["blocked"] == 1

    def test_not_blocked_before_minimum_requests(self):
        pool = ProxyPool([ProxyEntry(url="http://a:1", ethical_score=90)], include_direct=False)
        for _ in range(10):
            pool.record_outcome("http://a:1", success=False)
        assert pool.select() is not None


# =============================================================================
# Gateway
# =============================================================================

class TestComplianceGateway:
    def test_council_url_allowed_with_headers(self):
        decision = make_gateway().evaluate(COUNCIL_URL, declared_rate_limit=5)
        assert decision.allowed
        assert decision.method == AccessMethod.DIRECT
        assert decision.effective_rate_limit == 5
        assert decision.headers["Referer"] == "https://publicaccess.barnet.gov.uk"
        assert "Attribution required" in decision.warnings

    def test_robots_disallow_blocks(self):
        fetcher = FakeFetcher({
            "https://publicaccess.barnet.gov.uk/robots.txt": "User-agent: *\nDisallow: /online-applications\n",
        })
        decision = make_gateway(fetcher).evaluate(COUNCIL_URL)
        assert not decision.allowed
        assert decision.method == AccessMethod.BLOCKED
        assert decision.reasons[0].startswith("Blocked by robots.txt")
        assert "Request permission" in decision.alternatives

    def test_crawl_delay_lowers_rate(self):
        fetcher = FakeFetcher({
            "https://publicaccess.barnet.gov.uk/robots.txt": "User-agent: *\nCrawl-delay: 4\n",
        })
        decision = make_gateway(fetcher).evaluate(COUNCIL_URL, declared_rate_limit=5)
        assert decision.allowed
        assert decision.effective_rate_limit == 0.25
        assert decision.crawl_delay == 4

    def test_robots_check_can_be_disabled(self):
        fetcher = FakeFetcher({
            "https://publicaccess.barnet.gov.uk/robots.txt": "User-agent: *\nDisallow: /\n",
        })
        decision = make_gateway(fetcher, respect_robots=False).evaluate(COUNCIL_URL)
        assert decision.allowed
        assert fetcher.calls == []

    def test_prohibited_terms_suggest_api(self):
        decision = make_gateway().evaluate("https://tfl.gov.uk/status")
        assert not decision.allowed
        assert decision.method == AccessMethod.API
        assert decision.alternatives[0].startswith("Use official API")

    def test_commercial_site_without_consent_blocked(self):
        decision = make_gateway().evaluate("https://www.agentsite.co.uk/listings")
        assert not decision.allowed
        assert decision.reasons[0].startswith("Consent required")
        assert decision.alternatives == ["Request consent via email"]

    def test_commercial_site_with_consent_allowed(self):
        consent = ConsentTracker(records=[
            ConsentRecord(domain="agentsite.co.uk", consent_type=ConsentType.EXPLICIT, granted=True),
        ])
        assert make_gateway(consent=consent).evaluate("https://agentsite.co.uk/listings").allowed

    def test_proxy_selected_when_requested(self):
        pool = ProxyPool([ProxyEntry(url="http://ethical:3128", ethical_score=95)], include_direct=False)
        decision = make_gateway(proxies=pool).evaluate(COUNCIL_URL, use_proxy=True)
        assert decision.proxy == "http://ethical:3128"
        assert decision.method == AccessMethod.PROXY

    def test_no_eligible_proxy_warns(self):
        pool = ProxyPool(include_direct=False)
        decision = make_gateway(proxies=pool).evaluate(COUNCIL_URL, use_proxy=True)
        assert decision.allowed
        assert decision.proxy is None
        assert "No ethical proxies available" in decision.warnings

    def test_require_raises_with_decision(self):
        with pytest.raises(ComplianceBlockedError) as exc_info:
            make_gateway().require("https://tfl.gov.uk/status")
        assert exc_info.value.reasons == ["Terms of service prohibit scraping"]

    def test_audit_counts(self):
        audit = make_gateway().audit([COUNCIL_URL, "https://tfl.gov.uk/x"])
        assert audit["allowed"] == 1
        assert audit["blocked"] == 1
