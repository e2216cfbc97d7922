"""
Outbound identification.

Every request carries a self-identifying User-Agent plus contact headers so
site operators can see who is crawling and why. No browser impersonation.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AgentIdentity:
    bot_name: str = "PlanningScrapers"
    version: str = "1.0"
    website: str = "https://planning-scrapers.example.org"
    contact_email: str = "data@planning-scrapers.example.org"
    purpose: str = "Public Data Aggregation"
    user_agent_override: Optional[str] = None

    @property
    def user_agent(self) -> str:
        if self.user_agent_override:
            return self.user_agent_override
        return f"{self.bot_name}/{self.version} (+{self.website}; {self.contact_email})"

    @property
    def robots_token(self) -> str:
        """Product token matched against robots.txt User-agent lines."""
        return self.bot_name

    def headers(self, referer: Optional[str] = None, user_agent: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "User-Agent": user_agent or self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-GB,en;q=0.9",
            "From": self.contact_email,
            "X-Robot-Name": self.bot_name,
            "X-Robot-Contact": self.contact_email,
            "X-Robot-Website": self.website,
            "X-Robot-Purpose": self.purpose,
            "DNT": "1",
        }
        if referer:
            headers["Referer"] = referer
        return headers

    def is_identifying(self, user_agent: str) -> bool:
        """Whether a user agent string names this bot, its site or contact."""
        if not user_agent or len(user_agent) >= 500:
            return False
        return any(token in user_agent for token in (self.bot_name, self.website, self.contact_email))

    def policy(self) -> Dict[str, Any]:
        """Public crawler policy, suitable for a transparency page."""
        return {
            "bot_name": self.bot_name,
            "version": self.version,
            "user_agent": self.user_agent,
            "website": self.website,
            "contact": self.contact_email,
            "purpose": self.purpose,
            "policy": {
                "respects_robots_txt": True,
                "rate_limited": True,
                "identifies_itself": True,
                "opt_out": f"Email {self.contact_email} to exclude your domain",
            },
        }
