#!/usr/bin/env python3

import sys
import hashlib
import argparse
from urllib.parse import urlparse

from globecache.gcconfig import CFG
from globecache.gcstats import GCStats
from globecache.version import __version__
from globecache.absent import AbsentResourceList
from globecache.filestore import FileStore, SuffixFilter
from globecache.postprocess import CachingPostProcessor
from globecache.retrieve import RetrievalError
from globecache.retrievers import HTTPRetriever
from globecache.retrieval_service import RetrievalService
from globecache.utils.constants import MB

import logging
log = logging.getLogger(__name__)


def store_path_for_url(url):
    """Map a URL onto a store path: host, then the URL path segments.

    A query string is folded into a short digest so distinct queries do not
    collide on disk.
    """
    parsed = urlparse(url)
    if not parsed.netloc:
        raise ValueError(f"Not an absolute URL: {url}")

    host = parsed.netloc.replace(':', '_')
    parts = [p for p in parsed.path.split('/') if p and p not in ('.', '..')]
    if not parts or parsed.path.endswith('/'):
        parts.append('index')
    if parsed.query:
        digest = hashlib.md5(parsed.query.encode('utf-8')).hexdigest()[:10]
        parts[-1] = f"{parts[-1]}_{digest}"
    return '/'.join([host] + parts)


def _open_store(store_dir=None):
    if store_dir is None:
        store_dir = CFG.paths.cache_dir
    read_dirs = CFG.paths.read_dirs
    if not isinstance(read_dirs, list):
        read_dirs = [read_dirs] if read_dirs else []
    return FileStore(store_dir, read_locations=read_dirs)


def cmd_fetch(args):
    store = _open_store(args.store)
    absent = AbsentResourceList()
    failures = 0

    stats = None
    interval = float(CFG.general.stats_interval)
    if interval > 0:
        stats = GCStats(interval)
        stats.start()

    try:
        with RetrievalService(pool_size=args.pool_size) as service:
            futures = []
            for url in args.urls:
                path = store_path_for_url(url)
                pp = CachingPostProcessor(store=store, path=path, absent_list=absent)
                futures.append((url, path, service.run_retriever(HTTPRetriever(url, post_processor=pp),
                                                                 args.priority)))

            for url, path, future in futures:
                try:
                    data = future.result()
                except RetrievalError as err:
                    failures += 1
                    print(f"FAILED {url}: {err}", file=sys.stderr)
                    continue
                if data is None:
                    failures += 1
                    print(f"FAILED {url}: no usable content", file=sys.stderr)
                    continue
                print(f"{path}\t{len(data)} bytes")
    finally:
        if stats is not None:
            stats.stop()

    log.info(f"Fetched {len(args.urls) - failures} of {len(args.urls)} URLs")
    return 1 if failures else 0


def cmd_list(args):
    store = _open_store(args.store)
    file_filter = SuffixFilter(*args.suffix) if args.suffix else None
    if args.recursive:
        names = store.list_all_file_names(args.path, file_filter)
    else:
        names = store.list_file_names(args.path, file_filter)
    for name in names:
        print(name)
    return 0


def cmd_sweep(args):
    max_mb = args.max_mb
    if max_mb is None:
        max_mb = float(CFG.filestore.max_size_mb)
    if max_mb <= 0:
        log.info("Store size limit disabled, nothing to sweep")
        return 0
    store = _open_store(args.store)
    removed = store.sweep(int(max_mb * MB))
    print(f"Removed {removed} files")
    return 0


def cmd_config(args):
    if args.write:
        CFG.save()
        print(f"Wrote {CFG.conf_file}")
        return 0
    CFG.config.write(sys.stdout)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="globecache",
        description="globecache: tile and metadata retrieval cache"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    fetch = sub.add_parser("fetch", help="Download URLs into the store")
    fetch.add_argument("urls", nargs="+", metavar="URL")
    fetch.add_argument(
        "--store",
        help = "Store directory (default: [paths] cache_dir)"
    )
    fetch.add_argument(
        "--priority",
        type=float,
        default=0.0,
        help = "Retrieval priority, higher runs first"
    )
    fetch.add_argument(
        "--pool-size",
        type=int,
        default=None,
        help = "Number of concurrent retrievals"
    )
    fetch.set_defaults(func=cmd_fetch)

    lst = sub.add_parser("list", help="List store entries")
    lst.add_argument("path", nargs="?", default="")
    lst.add_argument("--store", help = "Store directory")
    lst.add_argument(
        "--suffix",
        action="append",
        default=[],
        help = "Only names ending with this suffix (repeatable)"
    )
    lst.add_argument(
        "-r",
        "--recursive",
        default=False,
        action="store_true",
        help = "Descend into subdirectories"
    )
    lst.set_defaults(func=cmd_list)

    sweep = sub.add_parser("sweep", help="Trim the store to a size limit")
    sweep.add_argument("--store", help = "Store directory")
    sweep.add_argument(
        "--max-mb",
        type=float,
        default=None,
        help = "Size limit in MB (default: [filestore] max_size_mb)"
    )
    sweep.set_defaults(func=cmd_sweep)

    config = sub.add_parser("config", help="Show or write the configuration")
    config.add_argument(
        "--write",
        default=False,
        action="store_true",
        help = f"Write the effective config to {CFG.conf_file}"
    )
    config.set_defaults(func=cmd_config)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    log.debug(f"globecache {__version__}: {args.command}")
    try:
        return args.func(args)
    except ValueError as err:
        print(f"error: {err}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
