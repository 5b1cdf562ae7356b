import asyncio
from pathlib import Path
from typing import Any, Optional

from mitmproxy import ctx, exceptions, http

from .errors import ConfigError
from .rules import (
    HostSubstitution, LocalFileReader, Passthrough, RequestInfo, Respond, Rewrite,
    RuleEngine, RuleLoader, RuleResolutionFailed, TargetResolver, throttle_delay,
)
from .rules.models import RewriteResult
from .utils import ProxyMapLogger, setup_logging

FAILURE_STATUS = 502


def request_info(flow: http.HTTPFlow) -> RequestInfo:
    """Immutable snapshot of the parts of a flow the rule engine looks at"""
    req = flow.request
    return RequestInfo(
        url=req.pretty_url,
        scheme=req.scheme,
        host=req.pretty_host,
        port=req.port,
        path=req.path,
        headers=dict(req.headers.items()),
    )


def apply_result(flow: http.HTTPFlow, result: RewriteResult) -> None:
    """Translate an engine result into changes on the mitmproxy flow"""
    req = flow.request

    if isinstance(result, Respond):
        # Setting a response skips the upstream request
        flow.response = http.Response.make(result.status_code, result.body, dict(result.headers))

    elif isinstance(result, Rewrite):
        req.scheme = result.scheme
        req.host = result.host
        req.port = result.port
        req.path = result.path
        for key, value in result.headers.items():
            if key.lower() == "host":
                req.host_header = value
            else:
                req.headers[key] = value

    elif isinstance(result, HostSubstitution):
        # hosts-file semantics: connect elsewhere, keep the Host header
        host_header = req.host_header
        req.host = result.host
        req.host_header = host_header

    elif isinstance(result, RuleResolutionFailed):
        flow.response = http.Response.make(
            FAILURE_STATUS,
            result.message.encode("utf-8"),
            {"Content-Type": "text/plain; charset=utf-8"},
        )

    if not isinstance(result, Passthrough):
        flow.metadata["proxymap"] = {
            "action": type(result).__name__,
            "rule": getattr(result, "rule_key", None),
        }


class CoreAddon:
    def __init__(self, rule_loader: Optional[RuleLoader] = None):
        self.logger: ProxyMapLogger = setup_logging()
        self.rule_loader: Optional[RuleLoader] = rule_loader
        self.rule_engine: RuleEngine = RuleEngine()
        self.throttle_kbps: int = 0
        if rule_loader is not None:
            self._install(rule_loader)

    def load(self, loader: Any) -> None:
        """Standard mitmproxy load hook"""
        loader.add_option(
            name="proxymap_config",
            typespec=Optional[str],
            default=None,
            help="Rule file (YAML or JSON) with map and hosts sections. "
                 "Defaults to $PROXYMAP_CONFIG or ~/.proxymap/rules.yaml.",
        )
        loader.add_option(
            name="proxymap_throttle",
            typespec=int,
            default=0,
            help="Bandwidth limit in kbps applied to request and response bodies, 0 to disable.",
        )

    def configure(self, updated: set) -> None:
        if "proxymap_throttle" in updated:
            if ctx.options.proxymap_throttle < 0:
                raise exceptions.OptionsError("proxymap_throttle must not be negative")
            self.throttle_kbps = ctx.options.proxymap_throttle

        if "proxymap_config" not in updated:
            return
        path = ctx.options.proxymap_config
        if not path and self.rule_loader is not None:
            return
        self._install(RuleLoader(Path(path) if path else None))

    def _install(self, rule_loader: RuleLoader) -> None:
        try:
            ruleset = rule_loader.load_rules(force=True, strict=True)
        except ConfigError as e:
            raise exceptions.OptionsError(f"proxymap: {e}") from e

        self.rule_loader = rule_loader
        self.rule_engine.resolver = TargetResolver(LocalFileReader(rule_loader.base_dir))
        self.rule_engine.ruleset = ruleset

    async def request(self, flow: http.HTTPFlow) -> None:
        # Answered by another addon already
        if flow.response or flow.error:
            return

        await self._throttle(flow.request.raw_content)

        if self.rule_loader is not None:
            self.rule_engine.ruleset = self.rule_loader.load_rules()

        try:
            result = await self.rule_engine.intercept(request_info(flow))
        except Exception as e:
            self.logger.error(f"Critical error in CoreAddon.request for {flow.request.pretty_url}: {e}")
            flow.response = http.Response.make(
                FAILURE_STATUS,
                f"proxymap: {e}".encode("utf-8"),
                {"Content-Type": "text/plain; charset=utf-8"},
            )
            return

        apply_result(flow, result)

    async def _throttle(self, content: Optional[bytes]) -> None:
        delay = throttle_delay(len(content) if content else 0, self.throttle_kbps)
        if delay > 0:
            await asyncio.sleep(delay)

    async def response(self, flow: http.HTTPFlow) -> None:
        if flow.response:
            await self._throttle(flow.response.raw_content)

        info = flow.metadata.get("proxymap")
        if not info or not flow.response:
            return
        res_len = len(flow.response.content) if flow.response.content else 0
        self.logger.info(
            f"{flow.request.method} {flow.request.url} {flow.response.status_code} {res_len}b [{info['action']}]"
        )
