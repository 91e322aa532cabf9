# Standard library imports and third-party dependencies
# Using asyncio for the check loop and aiohttp for the HTTP client
import sys
import os
import re
import time
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterator, List, Optional
from urllib.parse import urlparse

import aiohttp
import yaml
from multidict import CIMultiDict
from yarl import URL

logger = logging.getLogger(__name__)

# Checks run every 15 seconds and an endpoint must answer within 500ms
CHECK_INTERVAL = 15.0
MAX_LATENCY = 0.5

DEFAULT_METHOD = "GET"
DEFAULT_HEADERS = {"User-Agent": "endpoint-monitor/1.0"}
LOG_LEVEL_ENV = "ENDPOINT_MONITOR_LOG_LEVEL"

# RFC 7230 token characters, used for both methods and header names
_METHOD_TOKEN = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
_HEADER_NAME_TOKEN = _METHOD_TOKEN
_HEADER_FORBIDDEN_CHARS = re.compile(r"[\r\n\x00]")

USAGE = """
USAGE: endpoint-monitor <config_file_path>
       python endpoint_monitor.py <config_file_path>

REQUIRED ARGUMENT:

    config_file_path
        Relative or absolute path to an endpoint YAML configuration file.
"""

USAGE_CONFIG = """
CONFIGURATION FILE:

    The configuration file is a YAML list of endpoints. Each entry has:
        name (string, required)
            A free-text description of the endpoint.
        url (string, required)
            The URL of the HTTP endpoint.
        method (string, optional)
            The HTTP method to use. Defaults to GET.
        headers (dictionary, optional)
            HTTP headers to add to or override on the request.
        body (string, optional)
            A raw (usually JSON-encoded) string sent as the request body.

    Example:
        - name: fetch.com some post endpoint
          url: https://fetch.com/some/post/endpoint
          method: POST
          headers:
            content-type: application/json
            user-agent: fetch-synthetic-monitor
          body: '{"foo":"bar"}'
"""


class MonitorError(Exception):
    """Base class for every startup error raised by the monitor."""


class ConfigurationError(MonitorError):
    """Raised when the configuration file is missing or malformed."""


class RequestConstructionError(MonitorError):
    """Raised when an endpoint's method/URL cannot form a valid request."""


class DomainResolutionError(MonitorError):
    """Raised when an endpoint's URL cannot be mapped to a domain."""


class UrlParseError(DomainResolutionError):
    """Raised when an endpoint's URL cannot be parsed for its host."""


class EmptyUrlError(DomainResolutionError):
    """Raised when an endpoint's URL is an empty string."""


class RegistryUnavailableError(DomainResolutionError):
    """Raised when a domain is resolved without a registry to hold it."""


@dataclass
class EndpointConfig:
    """
    Represents the configuration for a single HTTP endpoint.

    The optional fields (method, headers, body) default to GET / None so that an
    endpoint only needs a name and a url. ``domain`` holds the key of the
    endpoint's Domain in the registry once the targets are built; it stays
    None for an endpoint that was never resolved.
    """
    name: str
    url: str
    method: str = DEFAULT_METHOD
    headers: Optional[Dict[str, str]] = None
    body: Optional[str] = None
    domain: Optional[str] = None


@dataclass(frozen=True)
class HttpRequest:
    """A validated outbound request, ready to hand to an aiohttp session."""
    method: str
    url: URL
    headers: CIMultiDict
    data: Optional[bytes] = None
    timeout: Optional[aiohttp.ClientTimeout] = None

    def request_kwargs(self) -> Dict[str, object]:
        kwargs: Dict[str, object] = {
            "method": self.method,
            "url": self.url,
            "headers": self.headers,
            "data": self.data,
        }
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        return kwargs


def build_request(method: Optional[str], url: str, body: Optional[str] = None,
                  headers: Optional[Dict[str, str]] = None,
                  max_latency: Optional[float] = None) -> HttpRequest:
    """
    Converts an endpoint declaration into an HttpRequest.

    If a method isn't provided, GET is used. If the body is empty, the request
    carries no payload at all (not an empty one). Configured headers are set on
    top of DEFAULT_HEADERS and replace any default with the same name; header
    names are case-insensitive. ``max_latency`` (seconds) binds a total
    deadline to the request.

    Raises RequestConstructionError when the method or a header name is not a
    valid token, a header value carries CR, LF or NUL, or the URL is not an
    absolute http(s) URL. I check headers here rather than leaving it to
    aiohttp, because aiohttp only rejects them while writing the request,
    long after create_targets() has accepted the configuration.
    """
    method = (method or DEFAULT_METHOD).upper()
    if not _METHOD_TOKEN.fullmatch(method):
        raise RequestConstructionError(f"invalid HTTP method {method!r}")

    try:
        request_url = URL(url)
    except (TypeError, ValueError) as e:
        raise RequestConstructionError(f"invalid URL {url!r}: {e}") from e
    if not request_url.is_absolute() or request_url.scheme not in ("http", "https"):
        raise RequestConstructionError(f"URL {url!r} is not an absolute http(s) URL")
    if not request_url.host:
        raise RequestConstructionError(f"URL {url!r} has no host")

    request_headers = CIMultiDict(DEFAULT_HEADERS)
    for name, value in (headers or {}).items():
        if not isinstance(name, str) or not _HEADER_NAME_TOKEN.fullmatch(name):
            raise RequestConstructionError(f"invalid header name {name!r}")
        if not isinstance(value, str):
            raise RequestConstructionError(f"header {name!r} value must be a string")
        if _HEADER_FORBIDDEN_CHARS.search(value):
            raise RequestConstructionError(
                f"header {name!r} contains a CR, LF or NUL character")
        request_headers[name] = value

    data = body.encode("utf-8") if body else None

    timeout = None
    if max_latency is not None:
        timeout = aiohttp.ClientTimeout(total=max_latency)

    return HttpRequest(method=method, url=request_url, headers=request_headers,
                       data=data, timeout=timeout)


@dataclass
class Domain:
    """Cumulative availability counters for one FQDN."""
    name: str
    up_count: int = 0
    total_count: int = 0

    def record_outcome(self, is_up: bool) -> None:
        """
        Records the outcome of one health check against this domain.

        Every check counts towards total_count, and only UP checks count
        towards up_count, so up_count can never pass total_count.
        """
        if is_up:
            self.up_count += 1
        self.total_count += 1

    @property
    def availability(self) -> int:
        return availability_percentage(self.up_count, self.total_count)


def update_domain_stats(domain: Optional[Domain], is_up: bool) -> None:
    """Records one outcome on ``domain``; does nothing when there is no domain."""
    if domain is None:
        return
    domain.record_outcome(is_up)


def availability_percentage(up_count: int, total_count: int) -> int:
    """
    Returns round(100 * up / total), rounding halves up, or 0 when nothing
    has been checked yet.

    Integer arithmetic keeps 1/200 at 1% where round() would give 0%.
    """
    if total_count == 0:
        return 0
    return (200 * up_count + total_count) // (2 * total_count)


class DomainRegistry:
    """
    Owns every Domain, keyed by FQDN, in the order they were first seen.

    I use an OrderedDict here so the report always lists domains in the order
    they first appear in the configuration. Endpoints refer to their domain
    by name, so the registry is the only place the counters live.
    """

    def __init__(self) -> None:
        self._domains: "OrderedDict[str, Domain]" = OrderedDict()

    def resolve(self, url: str) -> Domain:
        """
        Returns the Domain for the host of ``url``, creating it with zeroed
        counters the first time the host is seen.

        Only the host component is kept, so the port is dropped and
        https://www.example.com and https://example.com are different domains.
        """
        if not url:
            raise EmptyUrlError("cannot resolve a domain from an empty URL")
        try:
            domain_name = urlparse(url).hostname or ""
        except ValueError as e:
            raise UrlParseError(f"failed to parse URL {url!r}: {e}") from e

        domain = self._domains.get(domain_name)
        if domain is None:
            domain = Domain(name=domain_name)
            self._domains[domain_name] = domain
            logger.debug("Registered domain %r", domain_name)
        return domain

    def get(self, name: Optional[str]) -> Optional[Domain]:
        if name is None:
            return None
        return self._domains.get(name)

    def __iter__(self) -> Iterator[Domain]:
        return iter(self._domains.values())

    def __len__(self) -> int:
        return len(self._domains)

    def __contains__(self, name: object) -> bool:
        return name in self._domains


def resolve_domain(registry: Optional[DomainRegistry], url: str) -> Domain:
    """Resolves ``url`` against ``registry``, failing if there is no registry."""
    if registry is None:
        raise RegistryUnavailableError("failed to resolve domain, registry is not initialized")
    return registry.resolve(url)


class ConfigurationParser:
    """
    Handles the parsing of YAML configuration files into structured endpoint configs.

    Every problem with the file (missing, unreadable, bad YAML, wrong shape)
    is raised as a ConfigurationError so the caller can report it together
    with the usage text.
    """
    def __init__(self, config_path: str):
        self.config_path = config_path

    def parse_config(self) -> List[EndpointConfig]:
        try:
            with open(self.config_path, 'r') as file:
                config_data = yaml.safe_load(file)
        except FileNotFoundError as e:
            raise ConfigurationError(f"configuration file not found: {self.config_path}") from e
        except OSError as e:
            raise ConfigurationError(f"failed to read {self.config_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"failed to parse YAML in {self.config_path}: {e}") from e

        if not isinstance(config_data, list):
            raise ConfigurationError("configuration must be a YAML list of endpoints")

        endpoints = [self._parse_endpoint(index, item) for index, item in enumerate(config_data)]
        logger.info("Loaded %d endpoints from %s", len(endpoints), self.config_path)
        return endpoints

    @staticmethod
    def _parse_endpoint(index: int, item: object) -> EndpointConfig:
        if not isinstance(item, dict):
            raise ConfigurationError(f"endpoint #{index} must be a mapping")
        for key in ("name", "url"):
            if key not in item or item[key] is None:
                raise ConfigurationError(f"endpoint #{index} is missing required field {key!r}")

        headers = item.get("headers")
        if headers is not None:
            if not isinstance(headers, dict):
                raise ConfigurationError(f"endpoint #{index} headers must be a mapping")
            # YAML turns unquoted values such as 1 or true into non-strings,
            # and an empty value into None
            headers = {str(name): "" if value is None else str(value)
                       for name, value in headers.items()}

        body = item.get("body")
        if body is not None and not isinstance(body, str):
            raise ConfigurationError(f"endpoint #{index} body must be a string")

        return EndpointConfig(
            name=str(item["name"]),
            url=str(item["url"]),
            method=str(item.get("method") or DEFAULT_METHOD),
            headers=headers,
            body=body,
        )


@dataclass
class HealthCheckTargets:
    """The endpoints to check together with the registry of their domains."""
    endpoints: List[EndpointConfig]
    domains: DomainRegistry = field(default_factory=DomainRegistry)


def create_targets(endpoints: List[EndpointConfig]) -> HealthCheckTargets:
    """
    Validates every endpoint and links it to its domain.

    Each endpoint must produce a valid request and a resolvable domain; the
    first failure aborts construction so no checks ever run against a bad
    configuration.
    """
    targets = HealthCheckTargets(endpoints=endpoints)

    for endpoint in endpoints:
        try:
            build_request(endpoint.method, endpoint.url, endpoint.body, endpoint.headers)
        except RequestConstructionError as e:
            raise RequestConstructionError(
                f"failed to create request for {endpoint.name!r}: {e}") from e

        domain = resolve_domain(targets.domains, endpoint.url)
        endpoint.domain = domain.name

    return targets


class HealthChecker:
    """
    Runs the health checks for a set of targets and feeds the outcomes into
    their domains.

    Endpoints are checked one at a time, in configuration order, over the
    session handed in by the caller. I pass the session in rather than
    opening one per check, so a single aiohttp connection pool serves every
    cycle for the whole run.
    """
    def __init__(self, targets: HealthCheckTargets):
        self.targets = targets

    async def check_endpoint(self, session: aiohttp.ClientSession,
                             endpoint: EndpointConfig, max_latency: float) -> bool:
        """
        Checks a single endpoint and records UP/DOWN on its domain.

        The endpoint is UP when it answers with a 2xx status and the whole
        exchange, body included, finishes within ``max_latency`` seconds.
        Transport errors and timeouts count as DOWN. The body is always read
        to the end so the connection can be reused.

        A request that cannot be built here means an unvalidated
        configuration got through create_targets(); that is fatal and exits
        the process.
        """
        try:
            request = build_request(endpoint.method, endpoint.url, endpoint.body,
                                    endpoint.headers, max_latency=max_latency)
        except RequestConstructionError as e:
            logger.critical("Failed to create HTTP request for %r: %s", endpoint.name, e)
            sys.exit(1)

        is_up = False
        try:
            async with session.request(**request.request_kwargs()) as response:
                is_up = 200 <= response.status < 300
                if not is_up:
                    logger.info("%s is DOWN (status %d)", endpoint.name, response.status)
                try:
                    await response.read()
                except asyncio.TimeoutError:
                    logger.info("%s is DOWN (deadline exceeded reading body)", endpoint.name)
                    is_up = False
                except aiohttp.ClientError as e:
                    logger.warning("Failed to drain response body for %s: %s", endpoint.name, e)
        except asyncio.TimeoutError:
            logger.info("%s is DOWN (no response within %.0fms)", endpoint.name, max_latency * 1000)
            is_up = False
        except aiohttp.ClientError as e:
            logger.info("%s is DOWN (%s)", endpoint.name, e)
            is_up = False

        logger.debug("%s %s -> %s", request.method, request.url, "UP" if is_up else "DOWN")
        update_domain_stats(self.targets.domains.get(endpoint.domain), is_up)
        return is_up

    async def check_all_endpoints(self, session: aiohttp.ClientSession,
                                  max_latency: float = MAX_LATENCY) -> None:
        for endpoint in self.targets.endpoints:
            await self.check_endpoint(session, endpoint, max_latency)

    def get_availability_stats(self) -> "OrderedDict[str, int]":
        """
        Calculates availability percentages per domain, in the order the
        domains were registered. Domains without a name are left out.
        """
        stats: "OrderedDict[str, int]" = OrderedDict()
        for domain in self.targets.domains:
            if not domain.name:
                continue
            stats[domain.name] = domain.availability
        return stats


class MonitoringService:
    """
    Orchestrates the overall monitoring process.

    Each cycle checks every endpoint, then prints the cumulative availability
    of every domain. Cycles start on a fixed grid of ``interval`` seconds from
    the moment run() begins: a quick cycle waits for the next tick, a cycle
    that overruns one or more ticks is followed straight away by the next one
    and the missed ticks are dropped.

    ``clock`` and ``sleep`` default to time.monotonic and asyncio.sleep.
    """
    def __init__(self, targets: HealthCheckTargets,
                 interval: float = CHECK_INTERVAL,
                 max_latency: float = MAX_LATENCY,
                 session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.targets = targets
        self.health_checker = HealthChecker(targets)
        self.interval = interval
        self.max_latency = max_latency
        self.session_factory = session_factory or aiohttp.ClientSession
        self.clock = clock
        self.sleep = sleep
        self.running = False
        self.cycles = 0
        self._next_tick = 0.0

    @classmethod
    def from_config(cls, config_path: str, **kwargs) -> "MonitoringService":
        """Loads and validates ``config_path`` and builds a service for it."""
        endpoints = ConfigurationParser(config_path).parse_config()
        return cls(create_targets(endpoints), **kwargs)

    async def run_check_cycle(self, session: aiohttp.ClientSession) -> Dict[str, int]:
        """
        Executes a single monitoring cycle.

        Each cycle:
        1. Checks every endpoint, one after another, in configuration order
        2. Prints the cumulative availability of every domain
        """
        await self.health_checker.check_all_endpoints(session, self.max_latency)
        self.cycles += 1
        return self.report()

    def report(self) -> Dict[str, int]:
        """
        Prints one line per domain and returns the percentages it printed.

        I flush stdout after each report so the lines show up straight away
        when the output is piped into a file or a container log.
        """
        stats = self.health_checker.get_availability_stats()
        for domain, availability in stats.items():
            print(f"{domain} has {availability}% availability percentage")
        sys.stdout.flush()
        return stats

    async def wait_for_next_tick(self) -> None:
        now = self.clock()
        if now < self._next_tick:
            await self.sleep(self._next_tick - now)
            self._next_tick += self.interval
            return

        missed = int((now - self._next_tick) // self.interval) + 1
        logger.warning("Check cycle overran the %.0fs interval, starting the next one now",
                       self.interval)
        self._next_tick += missed * self.interval

    async def run(self) -> None:
        """Runs check cycles until stop() is called."""
        self.running = True
        self._next_tick = self.clock() + self.interval
        async with self.session_factory() as session:
            while self.running:
                await self.run_check_cycle(session)
                if not self.running:
                    break
                await self.wait_for_next_tick()
        logger.info("Monitoring stopped after %d cycles", self.cycles)

    def stop(self) -> None:
        """
        Enables graceful shutdown of the service.

        The running flag is checked after each cycle and after each wait, so
        the loop ends at the next of those points.
        """
        self.running = False


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configures logging on stderr.

    I keep diagnostics on stderr so stdout only carries the availability
    report. The level comes from ``level``, then from the
    ENDPOINT_MONITOR_LOG_LEVEL environment variable, and falls back to
    WARNING.
    """
    level_name = (level or os.environ.get(LOG_LEVEL_ENV) or "WARNING").upper()
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, level_name, logging.WARNING),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Application entry point with argument validation.

    Returns the process exit status: 1 when the arguments or the
    configuration are invalid. Otherwise monitoring runs until interrupted.
    """
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()

    if len(argv) != 1:
        print(f"ERROR: endpoint-monitor requires a single configuration file argument.\n{USAGE}",
              file=sys.stderr)
        return 1

    try:
        service = MonitoringService.from_config(argv[0])
    except ConfigurationError as e:
        print(f"ERROR: {e}\n{USAGE}\n{USAGE_CONFIG}", file=sys.stderr)
        return 1
    except MonitorError as e:
        print(f"ERROR: {e}\n{USAGE}", file=sys.stderr)
        return 1

    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        print("\nStopping monitoring service...")
        service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
