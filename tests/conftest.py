import io

import pytest

import nixy


class FakePopen:
    """Stand-in for subprocess.Popen driven by a per-test script of outcomes."""

    def __init__(self, argv, stdout=b"", stderr=b"", returncode=0):
        self.argv = argv
        self.stdout = io.BytesIO(stdout)
        self.stderr = io.BytesIO(stderr)
        self.returncode = returncode
        self.killed = False

    def communicate(self):
        return self.stdout.read(), self.stderr.read()

    def kill(self):
        self.killed = True
        self.returncode = -9

    def wait(self):
        return self.returncode


class FakeNix:
    def __init__(self):
        self.calls = []
        self.procs = []
        self.outcomes = {}

    def on(self, *args, stdout=b"", stderr=b"", returncode=0):
        self.outcomes[tuple(args)] = (stdout, stderr, returncode)

    def popen(self, argv, **kwargs):
        self.calls.append(list(argv))
        key = tuple(argv[1:])
        for prefix, outcome in self.outcomes.items():
            if key[:len(prefix)] == prefix:
                stdout, stderr, code = outcome
                proc = FakePopen(argv, stdout, stderr, code)
                self.procs.append(proc)
                return proc
        proc = FakePopen(argv)
        self.procs.append(proc)
        return proc

    def commands(self):
        return [c[1:] for c in self.calls]


@pytest.fixture
def fake_nix(monkeypatch):
    fake = FakeNix()
    monkeypatch.setattr(nixy.subprocess, "Popen", fake.popen)
    monkeypatch.setattr(nixy.NixRunner, "ensure_available", lambda self: None)
    monkeypatch.setattr(nixy, "_VERBOSE", False)
    return fake
