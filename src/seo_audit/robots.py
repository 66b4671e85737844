"""robots.txt policy: allow/disallow checks, crawl delay and advertised sitemaps."""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import unquote, urljoin, urlparse
from urllib.robotparser import RobotFileParser

import httpx

from seo_audit.config import CrawlConfig

logger = logging.getLogger(__name__)

_DIRECTIVE_LINE = re.compile(r"^\s*([a-z-]+)\s*:\s*(.*?)\s*$", re.IGNORECASE)
_CRAWL_DELAY_VALUE = re.compile(r"^\d*\.?\d+$")


@dataclass
class RobotsRule:
    """One Allow/Disallow line. `*` matches any run of characters, a trailing `$` anchors the end."""
    allow: bool
    path: str
    pattern: re.Pattern = field(init=False, repr=False)

    def __post_init__(self):
        path = unquote(self.path)
        anchored = path.endswith("$")
        if anchored:
            path = path[:-1]
        regex = ".*".join(re.escape(part) for part in path.split("*"))
        self.pattern = re.compile(regex + ("$" if anchored else ""))

    def matches(self, target: str) -> bool:
        return self.pattern.match(target) is not None


@dataclass
class AgentGroup:
    agents: List[str] = field(default_factory=list)
    rules: List[RobotsRule] = field(default_factory=list)
    crawl_delay: Optional[float] = None


def _parse_groups(content: str) -> List[AgentGroup]:
    """Split robots.txt into user-agent groups. Consecutive User-agent lines share one group."""
    groups: List[AgentGroup] = []
    current: Optional[AgentGroup] = None
    in_rules = False

    for raw_line in content.splitlines():
        match = _DIRECTIVE_LINE.match(raw_line.split("#", 1)[0])
        if not match:
            continue
        key, value = match.group(1).lower(), match.group(2)

        if key == "user-agent":
            if current is None or in_rules:
                current = AgentGroup()
                groups.append(current)
                in_rules = False
            current.agents.append(value.lower())
        elif key in ("allow", "disallow"):
            if current is None:
                continue
            in_rules = True
            # An empty Disallow allows everything and adds no rule
            if value:
                current.rules.append(RobotsRule(allow=key == "allow", path=value))
        elif key == "crawl-delay":
            if current is None:
                continue
            in_rules = True
            if _CRAWL_DELAY_VALUE.match(value) and current.crawl_delay is None:
                current.crawl_delay = float(value)

    return groups


def _select_group(groups: List[AgentGroup], user_agent: str) -> Optional[AgentGroup]:
    """Group for the user agent's product token, falling back to the `*` group."""
    token = user_agent.split("/")[0].lower()
    for group in groups:
        if any(agent != "*" and agent in token for agent in group.agents):
            return group
    for group in groups:
        if "*" in group.agents:
            return group
    return None


def _request_target(url: str) -> str:
    parsed = urlparse(url)
    target = unquote(parsed.path) or "/"
    if parsed.query:
        target += "?" + parsed.query
    return target


class RobotsPolicy:
    """Parsed robots.txt rules for one site, evaluated for one user agent.

    The most specific (longest) matching rule wins; Allow wins a tie.
    """

    def __init__(self, robots_url: str, content: str, user_agent: str):
        self.robots_url = robots_url
        self.content = content
        self.user_agent = user_agent
        self._group = _select_group(_parse_groups(content), user_agent)
        self._parser = RobotFileParser()
        self._parser.set_url(robots_url)
        self._parser.parse(content.splitlines())

    def matching_rule(self, url: str) -> Optional[RobotsRule]:
        if self._group is None:
            return None
        target = _request_target(url)
        best: Optional[Tuple[int, bool, RobotsRule]] = None
        for rule in self._group.rules:
            if rule.matches(target):
                key = (len(rule.path), rule.allow, rule)
                if best is None or key[:2] > best[:2]:
                    best = key
        return best[2] if best else None

    def is_allowed(self, url: str) -> bool:
        """True unless robots.txt disallows the URL. Never raises."""
        try:
            rule = self.matching_rule(url)
        except Exception as e:
            logger.debug(f"robots.txt check failed for {url}: {e}")
            return True
        return rule is None or rule.allow

    def get_crawl_delay(self) -> Optional[float]:
        return self._group.crawl_delay if self._group else None

    def get_sitemap_urls(self) -> List[str]:
        return list(self._parser.site_maps() or [])


class PermissiveRobotsPolicy:
    """Policy used when robots.txt could not be fetched: no restrictions."""

    robots_url: Optional[str] = None
    content = ""

    def is_allowed(self, url: str) -> bool:
        return True

    def get_crawl_delay(self) -> Optional[float]:
        return None

    def get_sitemap_urls(self) -> List[str]:
        return []


async def fetch_robots(client: httpx.AsyncClient, site_url: str, config: CrawlConfig):
    """Fetch and parse robots.txt for a site.

    A non-200 response is treated as an empty robots.txt (everything
    allowed). Any transport failure returns a PermissiveRobotsPolicy.

    Args:
        client: Shared HTTP client
        site_url: Root URL, e.g. 'https://example.com'
        config: Crawl configuration (user agent, timeout)

    Returns:
        RobotsPolicy or PermissiveRobotsPolicy
    """
    robots_url = urljoin(site_url, "/robots.txt")

    try:
        response = await client.get(
            robots_url,
            headers={"User-Agent": config.user_agent, "Accept": "text/plain,*/*"},
            timeout=config.timeout_seconds,
            follow_redirects=True,
        )
        if response.status_code == 200:
            content = response.text
            logger.info(f"Loaded robots.txt from {robots_url}")
        else:
            content = ""
            logger.info(f"No robots.txt found at {robots_url} (status: {response.status_code})")
        return RobotsPolicy(robots_url, content, config.user_agent)
    except Exception as e:
        logger.warning(f"Could not load robots.txt: {e}")
        return PermissiveRobotsPolicy()
