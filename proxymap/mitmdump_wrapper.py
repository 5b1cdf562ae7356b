"""
mitmproxy wrapper script
Starts mitmdump (or mitmweb with --web) with the proxymap addon loaded
"""
import argparse
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from proxymap import __version__
from proxymap.core.errors import ConfigError
from proxymap.core.rules.loader import DEFAULT_RULES_FILE, read_config_file
from proxymap.core.utils import setup_logging

DEFAULT_PORT = 8001
DEFAULT_WEB_PORT = 8002
DEFAULT_THROTTLE = 10000
LAUNCHER_OPTIONS = ("port", "web", "silent", "throttle")
ENTRY_SCRIPT = Path(__file__).with_name("entry.py")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="proxymap", description="Rule based request rewriting proxy",
                                     allow_abbrev=False)
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-p", "--port", type=int, help=f"proxy port, {DEFAULT_PORT} for default")
    parser.add_argument("-w", "--web", type=int, nargs="?", const=DEFAULT_WEB_PORT,
                        help=f"run mitmweb with its web UI on this port, {DEFAULT_WEB_PORT} for default")
    parser.add_argument("--throttle", type=int,
                        help=f"bandwidth limit in kbps, {DEFAULT_THROTTLE} for default, 0 to disable")
    parser.add_argument("-s", "--silent", action="store_true", default=None,
                        help="do not print anything into terminal")
    parser.add_argument("-c", "--clear", action="store_true",
                        help="clear all the certificates and temp files")
    parser.add_argument("--config", help="rule file, defaults to $PROXYMAP_CONFIG or ~/.proxymap/rules.yaml")
    return parser


def resolve_config_path(config: Optional[str]) -> Path:
    if config:
        return Path(config).expanduser()
    env_path = os.environ.get("PROXYMAP_CONFIG")
    return Path(env_path).expanduser() if env_path else DEFAULT_RULES_FILE


def file_options(config_path: Path) -> Dict[str, Any]:
    """Launcher options stored next to the rules (port, web, silent, throttle)"""
    if not config_path.exists():
        return {}
    data = read_config_file(config_path)
    return {k: data[k] for k in LAUNCHER_OPTIONS if data.get(k) is not None}


def clear_certificates(confdir: Path) -> List[Path]:
    removed = []
    for path in sorted(confdir.glob("mitmproxy-*")):
        if path.is_file():
            path.unlink()
            removed.append(path)
    return removed


def build_command(opts: Dict[str, Any], config_path: Path, confdir: str, extra: List[str]) -> Tuple[str, List[str]]:
    """Pick the mitmproxy tool and its arguments; command line beats the rule file"""
    web = opts.get("web")
    tool = "mitmweb" if web else "mitmdump"
    throttle = opts.get("throttle")
    if throttle is None:
        throttle = DEFAULT_THROTTLE

    args = [
        '--listen-port', str(opts.get("port") or DEFAULT_PORT),
        '--set', f'confdir={confdir}',
        '--set', f'proxymap_config={config_path}',
        '--set', f'proxymap_throttle={throttle}',
        '-s', str(ENTRY_SCRIPT),
    ]
    if web:
        args.extend(['--set', f'web_port={web}'])
    if opts.get("silent"):
        args.extend(['--set', 'termlog_verbosity=error'])
        if tool == "mitmdump":
            args.extend(['--set', 'flow_detail=0'])
    elif tool == "mitmdump":
        args.extend(['--set', 'flow_detail=2'])

    args.extend(extra)
    return tool, args


def main(argv: Optional[List[str]] = None) -> int:
    # Enable unbuffered output for real-time logging
    sys.stdout.reconfigure(line_buffering=True)
    sys.stderr.reconfigure(line_buffering=True)

    logger = setup_logging()
    parser = build_parser()
    cli, extra = parser.parse_known_args(argv)

    # Determine confdir (prioritize environment variable)
    confdir = os.environ.get('MITMPROXY_CONFDIR', '~/.mitmproxy')

    if cli.clear:
        removed = clear_certificates(Path(confdir).expanduser())
        logger.info(f"Removed {len(removed)} certificate file(s) from {confdir}")
        return 0

    config_path = resolve_config_path(cli.config)
    try:
        opts = file_options(config_path)
    except ConfigError as e:
        parser.error(str(e))
    opts.update({k: v for k, v in vars(cli).items() if k in LAUNCHER_OPTIONS and v is not None})

    tool, args = build_command(opts, config_path, confdir, extra)
    logger.info(f"Starting {tool} on port {opts.get('port') or DEFAULT_PORT} with rules from {config_path}")

    from mitmproxy.tools import main as mitm_main
    runner = mitm_main.mitmweb if tool == "mitmweb" else mitm_main.mitmdump
    return runner(args) or 0


if __name__ == '__main__':
    sys.exit(main())
