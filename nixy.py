#!/usr/bin/env python3

# -- PyYPSH ----------------------------------------------------- #
# nixy.py on PyYPSH                                               #
# Made by DiamondGotCat, Licensed under MIT License               #
# Copyright (c) 2025 DiamondGotCat                                #
# ---------------------------------------------- DiamondGotCat -- #

from __future__ import annotations

import argparse
import os
import re
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import IO, List, Optional, Sequence

from dotenv import load_dotenv
from rich.console import Console
from rich.live import Live
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

# ---- Paths & Constants ----------------------------------------- #

load_dotenv()

NIX_BIN: str = os.environ.get("NIXY_NIX_BIN") or "nix"
NIX_INSTALL_URL = "https://nixos.org/download.html"

DEFAULT_REPOSITORY = "nixpkgs"
UPGRADE_ALL_SELECTOR = ".*"
TICK_SECONDS = 0.3  # spinner advances on this period even when nix is silent

# Verbose logging flag and helper
_VERBOSE: bool = False
def vlog(*msg: object) -> None:
    if _VERBOSE:
        print("[DEBUG]", *msg, file=sys.stderr)

# Pretty printing helpers
class Colors:
    """ ANSI Color Codes """
    BLUE = "\033[0;34m"
    CYAN = "\033[0;36m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

def _p_info(msg: str) -> None:
    print(f"{Colors.CYAN}(i){Colors.RESET} {msg}")

def _p_action(msg: str) -> None:
    print(f"{Colors.BLUE}(>){Colors.RESET} {msg}")

def _p_warn(msg: str) -> None:
    print(f"{Colors.YELLOW}(!){Colors.RESET} {msg}")

def _p_question(msg: str) -> None:
    print(f"{Colors.YELLOW}(?){Colors.RESET} {msg}", end="", flush=True)

def _console() -> Optional[Console]:
    return Console() if sys.stdout.isatty() else None


# ---- Exceptions ------------------------------------------------ #

class NixyError(Exception):
    pass

class ToolNotFoundError(NixyError):
    pass

class SpawnError(NixyError):
    pass

class MalformedOutputError(NixyError):
    pass


# ---- Package references ---------------------------------------- #

@dataclass(frozen=True)
class PackageRef:
    """A `repository#name` reference; repository defaults to nixpkgs."""
    repository: str
    name: str

    @property
    def fullname(self) -> str:
        return f"{self.repository}#{self.name}"

    def __str__(self) -> str:
        return self.fullname

    @classmethod
    def parse(cls, raw: str) -> "PackageRef":
        items = raw.split("#")
        if len(items) == 1:
            return cls(repository=DEFAULT_REPOSITORY, name=items[0])
        # anything after a second '#' is dropped
        return cls(repository=items[0], name=items[1])

    def upgrade_selector(self) -> str:
        return f".*{re.escape(self.repository)}.*{re.escape(self.name)}.*"


# ---- Profile listing ------------------------------------------- #

@dataclass(frozen=True)
class ProfileEntry:
    position: str
    store_path: str

def parse_listing(raw: str) -> List[ProfileEntry]:
    """Parse `nix profile list` rows: position, flake attr, locked url, store path."""
    entries: List[ProfileEntry] = []
    for line in raw.split("\n"):
        chunks = line.split()
        if len(chunks) != 4:
            continue
        position, _attr, _url, store_path = chunks
        entries.append(ProfileEntry(position=position.strip(), store_path=store_path))
    return entries

def filter_entries(entries: Sequence[ProfileEntry], packages: Sequence[PackageRef]) -> List[ProfileEntry]:
    # Plain substring match: "bash" also selects "bash-completion".
    return [e for e in entries if any(p.name in e.store_path for p in packages)]


# ---- Live UI (status spinner) ---------------------------------- #

class _PlainStatusUI:
    """Fallback UI when stdout is not a terminal: prints each status change."""
    def __init__(self, message: str):
        self.message = message
        if message:
            print(f"      {message}")

    def set_message(self, text: str) -> None:
        if text != self.message:
            self.message = text
            print(f"      {text}")

    def stop(self) -> None:
        pass

class StatusLiveUI:
    """Rich-backed spinner showing the latest nix progress line."""
    def __init__(self, message: str, console: Optional[Console] = None):
        self.message = message
        self._console = console if console is not None else _console()
        if self._console is None:
            self._plain = _PlainStatusUI(message)
            return

        self._spinner = Spinner("dots", text=Text(message), style="bold dim")
        self._spinner.speed = self._spinner.interval / (TICK_SECONDS * 1000)
        self._live = Live(self._spinner, console=self._console,
                          refresh_per_second=1 / TICK_SECONDS, transient=True)
        self._live.start()

    def set_message(self, text: str) -> None:
        self.message = text
        if self._console is None:
            self._plain.set_message(text)
            return
        self._spinner.update(text=Text(text))
        self._live.update(self._spinner)

    def stop(self) -> None:
        if self._console is None:
            self._plain.stop()
            return
        self._live.stop()


# ---- Nix process runner ---------------------------------------- #

@dataclass
class RunResult:
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0

def _decode(data: bytes, *, strict: bool) -> str:
    if not strict:
        return data.decode("utf-8", errors="replace")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedOutputError(f"nix produced output that is not valid UTF-8: {e}") from e

class NixRunner:
    def __init__(self, nix_bin: str = NIX_BIN, *, teacher: bool = False):
        self.nix_bin = nix_bin
        self.teacher = teacher

    def argv(self, args: Sequence[str]) -> List[str]:
        return [self.nix_bin, *[str(a) for a in args]]

    def ensure_available(self) -> None:
        try:
            proc = subprocess.run([self.nix_bin, "--version"], capture_output=True, stdin=subprocess.DEVNULL)
        except OSError as e:
            raise ToolNotFoundError(f"`{self.nix_bin}` the package manager not found in your system.") from e
        vlog("nix --version:", proc.stdout.decode("utf-8", errors="replace").strip())

    def show_command(self, argv: Sequence[str], *, banner: bool = True) -> None:
        if not self.teacher:
            return
        if banner:
            print("Learn mode on!")
        print("Nix command created:")
        print(f"\n\t{' '.join(argv)}\n")

    def _spawn(self, argv: List[str]) -> subprocess.Popen:
        vlog("spawn:", argv)
        try:
            return subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                    stdin=subprocess.DEVNULL)
        except OSError as e:
            raise SpawnError(f"{argv[0]} command failed to run: {e}") from e

    def run(self, args: Sequence[str], *, stream: bool = False, status: str = "",
            relay: bool = True, strict: bool = False, banner: bool = True) -> RunResult:
        argv = self.argv(args)
        self.show_command(argv, banner=banner)
        if stream:
            result = self._run_streaming(argv, status)
        else:
            result = self._run_captured(argv, strict=strict)
        vlog("exit:", result.returncode, "argv:", argv)
        if relay:
            self.relay(result)
        return result

    def _run_captured(self, argv: List[str], *, strict: bool) -> RunResult:
        proc = self._spawn(argv)
        out, err = proc.communicate()
        return RunResult(argv=argv, returncode=proc.returncode,
                         stdout=_decode(out or b"", strict=strict),
                         stderr=_decode(err or b"", strict=False))

    def _run_streaming(self, argv: List[str], status: str) -> RunResult:
        proc = self._spawn(argv)
        out_chunks: List[bytes] = []
        drain = threading.Thread(target=lambda: out_chunks.append(proc.stdout.read()), daemon=True)
        drain.start()

        err_lines: List[str] = []
        ui = StatusLiveUI(status)
        try:
            for raw in proc.stderr:
                line = _decode(raw, strict=True)
                err_lines.append(line)
                stripped = line.strip()
                if stripped:
                    ui.set_message(stripped)
        except MalformedOutputError:
            proc.kill()
            proc.wait()
            raise
        finally:
            ui.stop()

        returncode = proc.wait()
        drain.join()
        return RunResult(argv=argv, returncode=returncode,
                         stdout=_decode(b"".join(out_chunks), strict=False),
                         stderr="".join(err_lines))

    @staticmethod
    def relay(result: RunResult) -> None:
        if result.succeeded:
            print(result.stdout)
        else:
            print(result.stderr, file=sys.stderr)


# ---- Removal selection ----------------------------------------- #

REMOVE_ALL = "all"
REMOVE_NONE = "none"
REMOVE_SUBSET = "subset"

@dataclass
class RemovalChoice:
    kind: str
    positions: List[str] = field(default_factory=list)

def interpret_choice(answer: str, entries: Sequence[ProfileEntry]) -> RemovalChoice:
    option = answer.strip().lower()
    if option == "a":
        return RemovalChoice(REMOVE_ALL, [e.position for e in entries])
    if option == "n":
        return RemovalChoice(REMOVE_NONE)
    # Each digit is its own position, so "12" means positions 1 and 2.
    return RemovalChoice(REMOVE_SUBSET, [c for c in option if c in "0123456789"])

def _print_entries(entries: Sequence[ProfileEntry]) -> None:
    console = _console()
    if console:
        table = Table(show_edge=False, box=None)
        table.add_column("Position", style="bold cyan", justify="right")
        table.add_column("Store Path")
        for e in entries:
            table.add_row(e.position, e.store_path)
        console.print(table)
        return
    print("Position\tStore Path")
    for e in entries:
        print(f"{e.position}\t\t{e.store_path}")

def remove_packages(runner: NixRunner, packages: Sequence[PackageRef],
                    stdin: Optional[IO[str]] = None) -> int:
    _p_action("Checking installed packages...")
    listing = runner.run(["profile", "list"], relay=False, strict=True)
    if not listing.succeeded:
        _p_warn(f"`{runner.nix_bin} profile list` failed: {listing.stderr.strip()}")

    found = filter_entries(parse_listing(listing.stdout), packages)
    if not found:
        _p_info("Package not found")
        return 0

    _p_info("Packages found\n")
    _print_entries(found)
    print()
    _p_question("Remove [a]ll, [n]one, or space separated positions [int]: ")
    answer = (stdin or sys.stdin).readline()

    choice = interpret_choice(answer, found)
    vlog("removal choice:", choice)
    if choice.kind == REMOVE_NONE:
        print("Chosen: none")
        return 0
    if choice.kind == REMOVE_ALL:
        _p_action("Removing all found packages...")
        result = runner.run(["profile", "remove", *choice.positions], banner=False)
        return 0 if result.succeeded else 1

    _p_action(f"Removing packages {answer.strip()}...")
    runner.run(["profile", "remove", *choice.positions], banner=False)
    # TODO: settle multi-digit positions and the exit code of this path together.
    return 1


# ---- CLI ------------------------------------------------------- #

def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="nixy",
        description="nixy - friendly front-end for nix profile",
    )
    p.add_argument("-t", "--teacher", action="store_true",
                   default=os.environ.get("NIXY_TEACHER") == "1",
                   help="Show the nix command built for each step")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    p.add_argument("--nix", default=NIX_BIN, help=f"nix executable (default: {NIX_BIN})")

    sub = p.add_subparsers(dest="cmd")

    sp_inst = sub.add_parser("install", aliases=["i"],
                             help="Install packages for the profile, repository defaults to nixpkgs")
    sp_inst.add_argument("packages", nargs="+", type=PackageRef.parse,
                         help="Package name, optionally preceded by repository#. Examples: htop, nixpkgs#htop")

    sub.add_parser("list", aliases=["ls"], help="List installed packages")

    sp_up = sub.add_parser("upgrade", aliases=["u", "update"], help="Upgrade all or specific packages")
    sp_up.add_argument("packages", nargs="*", type=PackageRef.parse,
                       help="Packages to upgrade (default: everything in the profile)")

    sp_search = sub.add_parser("search", aliases=["s"],
                               help="Find a package in the registry, repository defaults to nixpkgs")
    sp_search.add_argument("package", type=PackageRef.parse,
                           help="Regex used to find the package. Examples: nixpkgs#gnome3, gnome3")

    sp_rm = sub.add_parser("remove", aliases=["rm"], help="Remove one or more packages")
    sp_rm.add_argument("packages", nargs="+", type=PackageRef.parse)

    return p

COMMAND_ALIASES = {
    "i": "install",
    "ls": "list",
    "u": "upgrade",
    "update": "upgrade",
    "s": "search",
    "rm": "remove",
}


# ---- Built-in command handlers -------------------------------- #

def _cmd_install(runner: NixRunner, args: argparse.Namespace) -> int:
    _p_action("Installing package(s)...\n")
    fullnames = [p.fullname for p in args.packages]
    runner.run(["profile", "install", *fullnames], stream=True, status=" ".join(fullnames))
    return 0

def _cmd_list(runner: NixRunner, _args: argparse.Namespace) -> int:
    runner.run(["profile", "list"])
    return 0

def _cmd_upgrade(runner: NixRunner, args: argparse.Namespace) -> int:
    if args.packages:
        _p_action(f"Upgrading {' '.join(p.fullname for p in args.packages)}...")
        selectors = [p.upgrade_selector() for p in args.packages]
    else:
        _p_action("Upgrading all packages...")
        selectors = [UPGRADE_ALL_SELECTOR]
    runner.run(["profile", "upgrade", *selectors], stream=True, status=" ".join(selectors))
    return 0

def _cmd_search(runner: NixRunner, args: argparse.Namespace) -> int:
    _p_action(f"Searching for the package `{args.package}`...\n")
    runner.run(["search", args.package.fullname])
    return 0

def _cmd_remove(runner: NixRunner, args: argparse.Namespace) -> int:
    return remove_packages(runner, args.packages)


# ---- main ------------------------------------------------------ #

def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = _build_parser()
    args = parser.parse_args(argv)
    global _VERBOSE
    _VERBOSE = bool(args.verbose) or (os.environ.get("NIXY_DEBUG") == "1")
    vlog("argv:", argv)

    if not args.cmd:
        parser.print_help()
        return 0

    cmd = COMMAND_ALIASES.get(args.cmd, args.cmd)
    runner = NixRunner(args.nix, teacher=args.teacher)

    try:
        runner.ensure_available()
    except ToolNotFoundError as e:
        print(f"{e}\n")
        print("Installation:")
        print(f"\t{NIX_INSTALL_URL}")
        return 1

    try:
        if cmd == "install":
            return _cmd_install(runner, args)
        elif cmd == "list":
            return _cmd_list(runner, args)
        elif cmd == "upgrade":
            return _cmd_upgrade(runner, args)
        elif cmd == "search":
            return _cmd_search(runner, args)
        elif cmd == "remove":
            return _cmd_remove(runner, args)
        else:
            parser.print_help()
            return 2
    except NixyError as e:
        print(f"[NIXY ERROR] {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
