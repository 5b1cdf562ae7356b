"""mitmproxy script entry point: ``mitmdump -s proxymap/entry.py``"""
from proxymap.core import CoreAddon

addons = [CoreAddon()]
