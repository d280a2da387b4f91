"""module to hold constants used throughout the project"""
import os

CURRENT_CPU_COUNT = os.cpu_count() or 1

DATA_DIR = os.path.join(os.path.expanduser("~"), ".globecache-data")

# Temp files written by FileStore carry this suffix until renamed into place
TEMP_SUFFIX = ".gctmp"

# Body read granularity for retrievers; interrupts are checked between reads
READ_CHUNK_SIZE = 65536

MB = 1048576
