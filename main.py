import asyncio
import logging
import sys

from colorama import Fore, Style, init

from discovery.connection_source import LsofConnectionSource, PsutilConnectionSource
from discovery.process_grouper import filter_groups
from monitoring.engine import LatencyEngine
from monitoring.session_state import EngineSnapshot
from reports.console_view import render_process_groups, render_snapshot

# Initialize colorama for Windows color support
init(autoreset=True)

logger = logging.getLogger(__name__)


def get_flag_value(flag: str, default=None):
    """Return the argument following `flag` in sys.argv, or default."""
    for i, arg in enumerate(sys.argv):
        if arg == flag and i + 1 < len(sys.argv):
            return sys.argv[i + 1]
    return default


def print_frame(snapshot: EngineSnapshot) -> None:
    print("\n" + "=" * 80)
    print(render_snapshot(snapshot))


def main(process_name: str = None, search_text: str = "", use_lsof: bool = False,
         cycles: int = None):
    """Main entry point for the latency monitor.

    Args:
        process_name: Process group to track; list groups and exit if None
        search_text: Filter for the process list
        use_lsof: Read sockets via lsof/ps instead of psutil
        cycles: Stop after this many cycles (run until Ctrl-C if None)
    """
    source = LsofConnectionSource() if use_lsof else PsutilConnectionSource()
    engine = LatencyEngine(source=source)

    print("\n" + "=" * 80)
    print("LATENCY MONITOR - TRADING CONNECTION TRACKER")
    print("=" * 80 + "\n")

    groups = engine.refresh_processes()

    if not process_name:
        print(render_process_groups(filter_groups(groups, search_text)))
        print("\nRun again with --process NAME to start tracking.")
        return

    if not engine.start_tracking(process_name):
        print(f"{Fore.RED}No process named {process_name!r} has established connections.{Style.RESET_ALL}")
        matches = filter_groups(groups, process_name)
        if matches:
            print("\nDid you mean:")
            print(render_process_groups(matches))
        return

    engine.subscribe(print_frame)

    try:
        asyncio.run(engine.run(cycles=cycles))
    except KeyboardInterrupt:
        pass
    finally:
        engine.close()

    print("\n" + "=" * 80)
    print("MONITORING STOPPED")
    print("=" * 80)
    print("- Connection metadata and timing only")
    print("- No packets captured, no elevated privileges\n")


if __name__ == "__main__":
    debug = "--debug" in sys.argv

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    if "--help" in sys.argv or "-h" in sys.argv:
        print("""
╔════════════════════════════════════════════════════════════════════════════╗
║                            LATENCY MONITOR                                 ║
║                                                                            ║
║ Usage:  python main.py [options]                                           ║
║                                                                            ║
║ Options:                                                                   ║
║   --list              List process groups and exit (default)               ║
║   --search TEXT       Filter the process list by name                      ║
║   --process NAME      Track the named process group                        ║
║   --lsof              Use lsof/ps instead of psutil                        ║
║   --cycles N          Stop after N cycles                                  ║
║   --debug             Verbose logging                                      ║
║                                                                            ║
╚════════════════════════════════════════════════════════════════════════════╝
""")
        sys.exit(0)

    cycles_arg = get_flag_value("--cycles")

    main(
        process_name=None if "--list" in sys.argv else get_flag_value("--process"),
        search_text=get_flag_value("--search", ""),
        use_lsof="--lsof" in sys.argv,
        cycles=int(cycles_arg) if cycles_arg else None
    )
