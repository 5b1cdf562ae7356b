import tempfile
import unittest
from pathlib import Path
from unittest import mock

from mitmproxy import exceptions
from mitmproxy.test import taddons, tflow

from proxymap.core import CoreAddon
from proxymap.core.main import apply_result, request_info
from proxymap.core.rules import (
    HostSubstitution, Passthrough, Respond, Rewrite, RuleLoader, RuleResolutionFailed,
    TargetAttempt, UnresolvedTarget,
)

RULES_YAML = """
map:
  local:
    search: http://x.com/static/*
    target: files/{$1}
  api:
    search: !regex '^http://x\\.com/(api)'
    target: http://y.com/map/{$1}
  broken:
    search: http://x.com/broken/*
    target: missing/{$1}
  data:
    search: http://x.com/data.json
    target:
      ok: true
hosts:
  x.com: 127.0.0.1
"""


def make_flow(url: str):
    flow = tflow.tflow()
    flow.request.url = url
    return flow


class TestApplyResult(unittest.IsolatedAsyncioTestCase):
    async def test_request_info(self):
        flow = make_flow("https://x.com:8443/a/b?c=d")
        info = request_info(flow)
        self.assertEqual(info.url, "https://x.com:8443/a/b?c=d")
        self.assertEqual((info.scheme, info.host, info.port), ("https", "x.com", 8443))
        self.assertEqual(info.path, "/a/b?c=d")
        self.assertEqual(info.query, "c=d")

    async def test_respond(self):
        flow = make_flow("http://x.com/data.json")
        apply_result(flow, Respond(200, {"Content-Type": "application/json; charset=utf-8",
                                         "Cache-Control": "max-age=0, must-revalidate"}, b'{"ok":true}'))

        self.assertEqual(flow.response.status_code, 200)
        self.assertEqual(flow.response.content, b'{"ok":true}')
        self.assertEqual(flow.response.headers["Cache-Control"], "max-age=0, must-revalidate")
        self.assertEqual(flow.metadata["proxymap"]["action"], "Respond")

    async def test_rewrite(self):
        flow = make_flow("http://x.com/api?id=1")
        apply_result(flow, Rewrite(scheme="https", host="y.com", port=443, path="/map/api?id=1",
                                   headers={"Host": "y.com"}))

        self.assertIsNone(flow.response)
        self.assertEqual(flow.request.scheme, "https")
        self.assertEqual(flow.request.host, "y.com")
        self.assertEqual(flow.request.port, 443)
        self.assertEqual(flow.request.path, "/map/api?id=1")
        self.assertEqual(flow.request.headers["Host"], "y.com")
        self.assertEqual(flow.request.pretty_url, "https://y.com/map/api?id=1")

    async def test_host_substitution_keeps_host_header(self):
        flow = make_flow("http://x.com/path?q=1")
        flow.request.headers["Host"] = "x.com"
        apply_result(flow, HostSubstitution(host="127.0.0.1"))

        self.assertEqual(flow.request.host, "127.0.0.1")
        self.assertEqual(flow.request.headers["Host"], "x.com")
        self.assertEqual(flow.request.port, 80)
        self.assertEqual(flow.request.path, "/path?q=1")
        self.assertIsNone(flow.response)

    async def test_resolution_failure_is_502(self):
        flow = make_flow("http://x.com/broken/a.js")
        failure = RuleResolutionFailed(
            rule_key="broken", url="http://x.com/broken/a.js",
            unresolved=UnresolvedTarget((TargetAttempt("/missing/a.js", "missing"),)))
        apply_result(flow, failure)

        self.assertEqual(flow.response.status_code, 502)
        self.assertIn(b"/missing/a.js", flow.response.content)
        self.assertEqual(flow.metadata["proxymap"], {"action": "RuleResolutionFailed", "rule": "broken"})

    async def test_passthrough_leaves_flow_alone(self):
        flow = make_flow("http://z.com/")
        apply_result(flow, Passthrough())
        self.assertEqual(flow.request.pretty_url, "http://z.com/")
        self.assertNotIn("proxymap", flow.metadata)


class TestCoreAddon(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.root = Path(self.tmp.name)
        (self.root / "files").mkdir()
        (self.root / "files" / "app.js").write_bytes(b"local app")
        self.rules_file = self.root / "rules.yaml"
        self.rules_file.write_text(RULES_YAML, encoding="utf-8")

    async def test_request_hook(self):
        addon = CoreAddon()
        with taddons.context(addon) as tctx:
            tctx.configure(addon, proxymap_config=str(self.rules_file))

            flow = make_flow("http://x.com/static/app.js?v=3")
            await addon.request(flow)
            self.assertEqual(flow.response.status_code, 200)
            self.assertEqual(flow.response.content, b"local app")
            self.assertEqual(flow.response.headers["Content-Type"], "application/javascript; charset=utf-8")

            flow = make_flow("http://x.com/api?id=1")
            await addon.request(flow)
            self.assertIsNone(flow.response)
            self.assertEqual(flow.request.pretty_url, "http://y.com/map/api?id=1")

            flow = make_flow("http://x.com/data.json")
            await addon.request(flow)
            self.assertEqual(flow.response.content, b'{"ok":true}')

            flow = make_flow("http://x.com/broken/a.js")
            await addon.request(flow)
            self.assertEqual(flow.response.status_code, 502)

            flow = make_flow("http://x.com/index.html")
            await addon.request(flow)
            self.assertIsNone(flow.response)
            self.assertEqual(flow.request.host, "127.0.0.1")

    async def test_invalid_config_is_options_error(self):
        self.rules_file.write_text("map:\n  bad:\n    search: 1\n    target: /a\n", encoding="utf-8")
        addon = CoreAddon()
        with taddons.context(addon) as tctx:
            with self.assertRaises(exceptions.OptionsError):
                tctx.configure(addon, proxymap_config=str(self.rules_file))

    async def test_injected_loader(self):
        addon = CoreAddon(RuleLoader(self.rules_file))
        flow = make_flow("http://x.com/data.json")
        await addon.request(flow)
        self.assertEqual(flow.response.content, b'{"ok":true}')

    async def test_existing_response_is_untouched(self):
        addon = CoreAddon(RuleLoader(self.rules_file))
        flow = tflow.tflow(resp=True)
        flow.request.url = "http://x.com/data.json"
        original = flow.response.content
        await addon.request(flow)
        self.assertEqual(flow.response.content, original)
        self.assertNotIn("proxymap", flow.metadata)

    async def test_throttle_sleeps_by_body_size(self):
        addon = CoreAddon(RuleLoader(self.rules_file))
        with taddons.context(addon) as tctx:
            tctx.configure(addon, proxymap_throttle=8)
            self.assertEqual(addon.throttle_kbps, 8)

            flow = make_flow("http://z.com/upload")
            flow.request.content = b"x" * 1000
            with mock.patch("proxymap.core.main.asyncio.sleep", new_callable=mock.AsyncMock) as sleep:
                await addon.request(flow)
                sleep.assert_awaited_once_with(1.0)

                sleep.reset_mock()
                flow.response = tflow.tresp(content=b"y" * 2000)
                await addon.response(flow)
                sleep.assert_awaited_once_with(2.0)

    async def test_throttle_disabled_by_default(self):
        addon = CoreAddon(RuleLoader(self.rules_file))
        flow = tflow.tflow(resp=True)
        with mock.patch("proxymap.core.main.asyncio.sleep", new_callable=mock.AsyncMock) as sleep:
            await addon.response(flow)
        sleep.assert_not_awaited()

    async def test_negative_throttle_is_options_error(self):
        addon = CoreAddon()
        with taddons.context(addon) as tctx:
            with self.assertRaises(exceptions.OptionsError):
                tctx.configure(addon, proxymap_throttle=-1)


if __name__ == "__main__":
    unittest.main()
