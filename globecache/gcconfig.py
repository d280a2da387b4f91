#!/usr/bin/env python3

import os
import ast
import configparser

from globecache.utils.constants import DATA_DIR, CURRENT_CPU_COUNT

import logging
log = logging.getLogger(__name__)


class SectionParser(object):
    """Attribute view over one config section.

    Values stay stripped strings, except `[...]` values which are read as
    Python lists.
    """

    def __init__(self, /, **kwargs):
        for k, v in kwargs.items():
            s = '' if v is None else str(v).strip()
            if s.startswith('[') and s.endswith(']'):
                try:
                    s = ast.literal_eval(s)
                except (ValueError, SyntaxError):
                    pass
            setattr(self, k, s)


class GCConfig(object):

    _defaults = f"""
[general]
# Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
console_log_level = INFO
# File log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
file_log_level = DEBUG
# Seconds between STATS log lines while fetching; 0 disables
stats_interval = 10

[paths]
# Writable cache root.  Fetched data lands here.
cache_dir = {os.path.join(DATA_DIR, "cache")}
# Additional read-only roots searched after cache_dir, e.g. bundled data
read_dirs = []
log_file = {os.path.join(DATA_DIR, "logs", "globecache.log")}

[retrieval]
# Number of worker threads.  Bounds concurrent network and disk I/O.
pool_size = {min(32, CURRENT_CPU_COUNT * 4)}
# Seconds to wait for a connection
connect_timeout = 8.0
# Seconds to wait between bytes of a response
read_timeout = 20.0
# Requests that wait in the queue longer than this many seconds are dropped.
# 0 disables the check.
stale_request_limit = 30.0
user_agent = globecache/1.0

[absent]
# Number of resources tracked before the oldest is forgotten
max_list_size = 2000
# Consecutive failures before the long backoff applies
max_tries = 2
# Seconds a failed resource is suppressed before the early re-probe
min_check_interval = 10.0
# Seconds a resource is suppressed once max_tries is reached
try_again_interval = 60.0

[memcache]
# Capacity of caches created without an explicit size, in MB
default_capacity_mb = 128
# Evict down to this fraction of capacity when a cache overflows
low_water_frac = 1.0
# Process RSS above which the memory monitor clears caches. 0 disables.
mem_limit_mb = 0
# Seconds between memory checks
poll_interval = 15.0

[session]
# Number of per-session documents kept
capacity = 64

[filestore]
# Max size of the writable cache root in MB, enforced by sweep.  0 disables.
max_size_mb = 10240
"""

    def __init__(self, conf_file=None):
        self.config = configparser.ConfigParser(strict=False, allow_no_value=True, comment_prefixes='/')
        if not conf_file:
            conf_file = os.environ.get(
                "GLOBECACHE_CONFIG",
                os.path.join(os.path.expanduser("~"), ".globecache")
            )
        self.conf_file = conf_file
        self.ready = self.load()

    def load(self):
        self.config.read_string(self._defaults)
        if os.path.isfile(self.conf_file):
            log.info(f"Config file found {self.conf_file} reading...")
            self.config.read(self.conf_file)
        else:
            log.debug("No config file found. Using defaults...")

        self.get_config()
        return True

    def _load_defaults_parser(self):
        """Create a ConfigParser loaded with internal defaults."""
        defaults_cp = configparser.ConfigParser(strict=False, allow_no_value=True, comment_prefixes='/')
        defaults_cp.read_string(self._defaults)
        return defaults_cp

    def _is_value_valid_for_default(self, current_value, default_value):
        """Validate current_value against the type implied by default_value.

        Returns True if current_value looks valid for the default's type; False otherwise.
        """
        s = '' if current_value is None else str(current_value).strip()
        d = '' if default_value is None else str(default_value).strip()

        if d.startswith('[') and d.endswith(']'):
            try:
                return isinstance(ast.literal_eval(s), list)
            except (ValueError, SyntaxError):
                return False

        for kind in (int, float):
            try:
                kind(d)
            except ValueError:
                continue
            try:
                kind(s)
                return True
            except ValueError:
                return False

        return s != ''

    def _sanitize_and_patch_config(self):
        """Ensure all values exist and are valid; fill with defaults where not."""
        defaults_cp = self._load_defaults_parser()
        patched = False

        for sect in defaults_cp.sections():
            if not self.config.has_section(sect):
                self.config.add_section(sect)
                patched = True

            for key, def_val in defaults_cp.items(sect):
                if key.startswith('#'):
                    # Comment lines are kept as valueless keys
                    continue
                has_opt = self.config.has_option(sect, key)
                cur_val = self.config.get(sect, key, fallback=None) if has_opt else None

                needs_default = (not has_opt) or (cur_val is None) or (str(cur_val).strip() == '')
                if not needs_default and not self._is_value_valid_for_default(cur_val, def_val):
                    log.warning(f"Invalid value {cur_val!r} for [{sect}] {key}, using default {def_val!r}")
                    needs_default = True

                if needs_default:
                    self.config.set(sect, key, str(def_val))
                    patched = True

        return patched

    def get_config(self):
        # Pull info from ConfigParser object into GCConfig
        self._sanitize_and_patch_config()

        config_dict = {sect: SectionParser(**dict(self.config.items(sect))) for sect in
                self.config.sections()}
        self.__dict__.update(**config_dict)

    def save(self):
        log.info("Saving config ... ")
        self.set_config()

        conf_dir = os.path.dirname(self.conf_file)
        if conf_dir:
            os.makedirs(conf_dir, exist_ok=True)
        with open(self.conf_file, 'w') as h:
            self.config.write(h)
        log.info(f"Wrote config file: {self.conf_file}")

    def set_config(self):
        # Push info from GCConfig into ConfigParser object
        for sect in self.config.sections():
            foo = self.__dict__.get(sect)
            if foo is None:
                continue
            for k, v in foo.__dict__.items():
                if k.startswith('#'):
                    continue
                self.config[sect][k] = str(v)


CFG = GCConfig()
