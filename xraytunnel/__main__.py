#!/usr/bin/env python3
"""
xraytunnel command line tools.

Usage:
    python -m xraytunnel version
    python -m xraytunnel ports 2
    python -m xraytunnel convert "vless://..."
    python -m xraytunnel patch config.json --port 1080 --sniff -o final.json
    python -m xraytunnel fetch-geo --dir runtime
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from tqdm import tqdm

from xraytunnel import __version__
from xraytunnel.core.config import TunnelConfig
from xraytunnel.core.errors import XrayTunnelError
from xraytunnel.core.models import SniffingOptions, iter_strings
from xraytunnel.core.utils import save_json, setup_logging
from xraytunnel.engine.process import XrayProcessEngine
from xraytunnel.network.geofiles import GeoFilesLoader
from xraytunnel.tunnel.patch import ConfigPatcher
from xraytunnel.tunnel.ports import PortAllocator

logger = logging.getLogger("xraytunnel")


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(prog="xraytunnel", description="Xray packet tunnel tools")
    parser.add_argument("--env-file", help="Environment file with XRAYTUNNEL_* settings")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("version", help="Show the xray engine version")

    ports = subparsers.add_parser("ports", help="Allocate free local ports")
    ports.add_argument("count", type=int, nargs="?", default=1)

    convert = subparsers.add_parser("convert", help="Convert share links to an Xray config")
    convert.add_argument("link", help="Share link, newline separated links or a base64 subscription")
    convert.add_argument("-o", "--output", help="Write the config to this file")

    patch = subparsers.add_parser("patch", help="Patch a config with the tunnel SOCKS inbound")
    patch.add_argument("config", help="Path of the base Xray JSON config")
    patch.add_argument("--port", type=int, required=True, help="Local SOCKS port")
    patch.add_argument("--sniff", action="store_true", help="Enable inbound sniffing")
    patch.add_argument("--dest-override", default="http,tls",
                       help="Sniffed protocols, comma separated (default: http,tls)")
    patch.add_argument("--route-only", action="store_true", help="Use sniffed domains for routing only")
    patch.add_argument("--exclude", default="", help="Domains excluded from sniffing, comma separated")
    patch.add_argument("-o", "--output", help="Write the patched config to this file")

    fetch = subparsers.add_parser("fetch-geo", help="Download geoip.dat and geosite.dat")
    fetch.add_argument("--dir", help="Target directory (default: configured data_dir)")
    fetch.add_argument("--geoip-url", help="Override the geoip.dat URL")
    fetch.add_argument("--geosite-url", help="Override the geosite.dat URL")

    return parser


def _emit(data, output: Optional[str]):
    if output:
        save_json(output, data)
        logger.info(f"Wrote {output}")
    else:
        print(json.dumps(data, indent=2, ensure_ascii=False))


async def fetch_geo(config: TunnelConfig, args) -> None:
    loader = GeoFilesLoader(
        geoip_url=config.get("geoip_url"),
        geosite_url=config.get("geosite_url"),
        timeout=config.get("download_timeout"),
        chunk_size=config.get("download_chunk_size"),
    )
    directory = args.dir or config.get("data_dir")

    with tqdm(total=100, desc="Geo files", unit="%") as pbar:
        def on_progress(fraction: float):
            pbar.n = round(fraction * 100, 1)
            pbar.refresh()

        await loader.load_geo_files(
            directory,
            geosite_url=args.geosite_url,
            geoip_url=args.geoip_url,
            progress_callback=on_progress,
        )


def run_command(config: TunnelConfig, args) -> int:
    if args.command == "version":
        engine = XrayProcessEngine(config.get("xray_path"), config.get("engine_startup_timeout"))
        print(engine.version())

    elif args.command == "ports":
        engine = XrayProcessEngine(config.get("xray_path"), config.get("engine_startup_timeout"))
        for port in PortAllocator(engine).allocate(args.count):
            print(port)

    elif args.command == "convert":
        engine = XrayProcessEngine(config.get("xray_path"), config.get("engine_startup_timeout"))
        _emit(json.loads(engine.share_link_to_config(args.link)), args.output)

    elif args.command == "patch":
        with open(args.config, "r", encoding="utf-8") as f:
            base = f.read()
        sniffing = None
        if args.sniff:
            sniffing = SniffingOptions(
                dest_override=iter_strings(args.dest_override),
                enabled=True,
                route_only=args.route_only,
                domains_excluded=iter_strings(args.exclude),
                metadata_only=False,
            )
        patcher = ConfigPatcher(config.get("name_servers"), config.get("query_strategy"))
        _emit(patcher.patch(base, args.port, sniffing), args.output)

    elif args.command == "fetch-geo":
        asyncio.run(fetch_geo(config, args))

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        print(f"\nxraytunnel v{__version__}")
        return 0

    config = TunnelConfig(env_file=args.env_file)
    level = "DEBUG" if args.verbose else config.get("log_level")
    setup_logging(getattr(logging, level, logging.INFO), config.get("log_file"))

    errors = config.validate()
    if errors:
        logger.error("Configuration errors found:")
        for error in errors:
            logger.error(f"  - {error}")
        return 1

    try:
        return run_command(config, args)
    except (XrayTunnelError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
