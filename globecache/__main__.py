import os
import sys
import logging
import logging.handlers

from globecache.gcconfig import CFG


def setuplogs():
    log_file = os.path.expanduser(str(CFG.paths.log_file))
    log_dir = os.path.dirname(log_file)
    if log_dir and not os.path.isdir(log_dir):
        os.makedirs(log_dir)

    # Get log levels from config
    file_log_level_str = getattr(CFG.general, 'file_log_level', 'DEBUG').upper()
    console_log_level_str = getattr(CFG.general, 'console_log_level', 'INFO').upper()

    # Override with GC_DEBUG environment variable if set (for development)
    if os.environ.get('GC_DEBUG'):
        file_log_level_str = 'DEBUG'
        console_log_level_str = 'DEBUG'

    file_log_level = getattr(logging, file_log_level_str, logging.DEBUG)
    console_log_level = getattr(logging, console_log_level_str, logging.INFO)

    # Root logger passes everything either handler wants
    root_level = min(file_log_level, console_log_level)

    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_file,
        maxBytes=10485760,
        backupCount=5
    )
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(file_formatter)

    handlers = [file_handler]
    if sys.stderr is not None:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(console_log_level)
        console_handler.setFormatter(console_formatter)
        handlers.append(console_handler)

    logging.basicConfig(
        level=root_level,
        handlers=handlers
    )

    log = logging.getLogger(__name__)
    log.info(f"Setup logs: {log_file}")
    log.info(f"File log level: {file_log_level_str}, Console log level: {console_log_level_str}")


def run():
    setuplogs()
    from globecache import cli
    return cli.main()


if __name__ == '__main__':
    sys.exit(run())
