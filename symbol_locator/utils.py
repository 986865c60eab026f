"""Console output helpers shared by the symbol locator modules."""
import sys

# Enable verbose logging for debugging symbol resolution
VERBOSE = False


def safe_print(msg: str):
    """Print message safely, handling unicode encoding issues on Windows."""
    try:
        print(msg)
    except UnicodeEncodeError:
        # Fallback: try with errors='replace'
        print(msg.encode(sys.stdout.encoding or 'utf-8', errors='replace').decode(sys.stdout.encoding or 'utf-8', errors='replace'))


def log(message: str):
    """Log a message if verbose mode is enabled."""
    if VERBOSE:
        safe_print(f"[SYMBOL] {message}")
