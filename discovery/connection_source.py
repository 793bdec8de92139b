"""Connection source adapters.

Reads this machine's established outbound TCP connections and the processes
that own them. No admin privileges required; sockets owned by processes we
cannot inspect are simply skipped.

Two interchangeable sources implement the same contract:
    - PsutilConnectionSource: cross-platform, uses psutil (default)
    - LsofConnectionSource: parses lsof/ps text output (macOS, Linux)

Contract:
    - list_processes_with_established_connections() -> set of PIDs
    - resolve_executable_names(pids) -> {pid: executable base name}
    - list_established_connections(pids) -> [(pid, remote_ip, remote_port)]

Every failure yields an empty result. Zero connections is a normal state.
"""

import logging
import os
import subprocess
from typing import Dict, Iterable, List, Set, Tuple

import psutil

import config

logger = logging.getLogger(__name__)

RawConnection = Tuple[int, str, int]


def executable_base_name(path: str) -> str:
    """Strip directories from an executable path.

    Args:
        path: Full command path or bare name (e.g., "/Applications/X.app/Contents/MacOS/X")

    Returns:
        Last path component, or "" if nothing is left
    """
    path = path.strip()
    if not path:
        return ""
    return os.path.basename(path.rstrip("/\\")) or ""


def unwrap_address(addr: str) -> Tuple[str, int]:
    """Split an "ip:port" token into its parts.

    IPv6 addresses may come bracketed ("[2001:db8::1]:443") or bare
    ("2001:db8::1:443"); the port is always the last colon-separated field.

    Raises:
        ValueError: token has no port or the port is not a number
    """
    if ":" not in addr:
        raise ValueError(f"no port in address {addr!r}")
    ip, port_str = addr.rsplit(":", 1)
    if ip.startswith("[") and ip.endswith("]"):
        ip = ip[1:-1]
    return ip, int(port_str)


class ConnectionSource:
    """Base class for the socket-table / process-list collaborators."""

    def list_processes_with_established_connections(self) -> Set[int]:
        raise NotImplementedError

    def resolve_executable_names(self, pids: Iterable[int]) -> Dict[int, str]:
        raise NotImplementedError

    def list_established_connections(self, pids: Iterable[int]) -> List[RawConnection]:
        raise NotImplementedError


# ============================================================================
# psutil
# ============================================================================

class PsutilConnectionSource(ConnectionSource):
    """Connection source backed by psutil.net_connections()."""

    def _established(self) -> List[RawConnection]:
        try:
            conns = psutil.net_connections(kind='tcp')
        except psutil.AccessDenied:
            # macOS needs root for the system-wide table
            return self._established_per_process()
        except (psutil.Error, OSError) as e:
            logger.debug(f"net_connections failed: {e}")
            return []
        return [
            (c.pid, c.raddr.ip, c.raddr.port) for c in conns
            if c.status == psutil.CONN_ESTABLISHED and c.raddr and c.pid
        ]

    def _established_per_process(self) -> List[RawConnection]:
        found = []
        for proc in psutil.process_iter(['pid']):
            try:
                for c in proc.net_connections(kind='tcp'):
                    if c.status == psutil.CONN_ESTABLISHED and c.raddr:
                        found.append((proc.pid, c.raddr.ip, c.raddr.port))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return found

    def list_processes_with_established_connections(self) -> Set[int]:
        return {pid for pid, _, _ in self._established()}

    def resolve_executable_names(self, pids: Iterable[int]) -> Dict[int, str]:
        names = {}
        for pid in pids:
            try:
                proc = psutil.Process(pid)
                try:
                    name = executable_base_name(proc.exe())
                except (psutil.AccessDenied, psutil.ZombieProcess, OSError):
                    name = ""
                names[pid] = name or executable_base_name(proc.name())
            except psutil.Error:
                continue
        return {pid: name for pid, name in names.items() if name}

    def list_established_connections(self, pids: Iterable[int]) -> List[RawConnection]:
        wanted = set(pids)
        if not wanted:
            return []
        return [conn for conn in self._established() if conn[0] in wanted]


# ============================================================================
# lsof / ps
# ============================================================================

def parse_lsof_output(output: str) -> List[RawConnection]:
    """Parse `lsof -nP -iTCP -sTCP:ESTABLISHED` output.

    Expected columns:
        COMMAND PID USER FD TYPE DEVICE SIZE/OFF NODE NAME (STATE)
    with NAME like "192.168.1.43:54321->34.200.1.1:7300".

    Returns:
        List of (pid, remote_ip, remote_port)
    """
    connections = []

    # Skip header line
    for line in output.split('\n')[1:]:
        parts = line.split()
        if len(parts) < 9:
            continue

        try:
            pid = int(parts[1])
        except ValueError:
            continue

        name = parts[8]
        if '->' not in name:
            continue
        remote = name.split('->', 1)[1]

        try:
            remote_ip, remote_port = unwrap_address(remote)
        except ValueError:
            continue

        connections.append((pid, remote_ip, remote_port))

    return connections


def parse_ps_output(output: str) -> Dict[int, str]:
    """Parse `ps -o pid=,comm=` output into {pid: executable base name}.

    The command column may contain spaces (macOS app bundles), so everything
    after the PID is joined back together before taking the base name.
    """
    names = {}
    for line in output.split('\n'):
        parts = line.split()
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[0])
        except ValueError:
            continue
        name = executable_base_name(" ".join(parts[1:]))
        if name:
            names[pid] = name
    return names


class LsofConnectionSource(ConnectionSource):
    """Connection source that shells out to lsof and ps."""

    def __init__(self, lsof_path: str = "lsof", ps_path: str = "ps",
                 timeout: float = config.DISCOVERY_TIMEOUT_S):
        self.lsof_path = lsof_path
        self.ps_path = ps_path
        self.timeout = timeout

    def _run(self, args: List[str]) -> str:
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Error running {args[0]}: {e}")
            return ""
        return result.stdout or ""

    def list_processes_with_established_connections(self) -> Set[int]:
        output = self._run([self.lsof_path, '-nP', '-iTCP', '-sTCP:ESTABLISHED'])
        return {pid for pid, _, _ in parse_lsof_output(output)}

    def resolve_executable_names(self, pids: Iterable[int]) -> Dict[int, str]:
        pid_args = [str(pid) for pid in sorted(set(pids))]
        if not pid_args:
            return {}
        output = self._run([self.ps_path, '-o', 'pid=,comm=', '-p', ','.join(pid_args)])
        return parse_ps_output(output)

    def list_established_connections(self, pids: Iterable[int]) -> List[RawConnection]:
        connections = []
        for pid in sorted(set(pids)):
            output = self._run([
                self.lsof_path, '-a', '-nP', '-p', str(pid),
                '-iTCP', '-sTCP:ESTABLISHED'
            ])
            connections.extend(parse_lsof_output(output))
        return connections


# ============================================================================
# Simple CLI test
# ============================================================================

if __name__ == "__main__":
    source = PsutilConnectionSource()
    pids = source.list_processes_with_established_connections()
    names = source.resolve_executable_names(pids)

    print(f"Processes with established TCP connections: {len(pids)}\n")
    for pid, ip, port in source.list_established_connections(pids)[:20]:
        print(f"  {names.get(pid, '?'):25} {pid:>7}  -> {ip}:{port}")
