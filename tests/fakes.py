import os
import subprocess
import unittest

import provisioning

DOCKER_KEY_COLONS = (
    "pub:-:4096:1:8D81803C0EBFCD88:1487788586:::-:::scESA::::::23::0:\n"
    "fpr:::::::::9DC858229FC7DD38854AE2D88D81803C0EBFCD88:\n"
    "uid:-::::1487792064::B5E4F1B3A2F0E4D1C9A8::Docker Release (CE deb) <docker@docker.com>::::::::::0:\n"
    "sub:-:4096:1:7EA0A9C3F273FCD8:1487791094::::::s::::::23:\n"
    "fpr:::::::::D3306A018370199E527AE7DF7EA0A9C3F273FCD8:\n"
)

FORGED_KEY_COLONS = (
    "pub:-:4096:1:0123456789ABCDEF:1487788586:::-:::scESA::::::23::0:\n"
    "fpr:::::::::00112233445566778899AABB0123456789ABCDEF:\n"
)

# A forged primary key carrying Docker's fingerprint on a subkey only.
SUBKEY_ONLY_COLONS = (
    "pub:-:4096:1:0123456789ABCDEF:1487788586:::-:::scESA::::::23::0:\n"
    "fpr:::::::::00112233445566778899AABB0123456789ABCDEF:\n"
    "sub:-:4096:1:8D81803C0EBFCD88:1487791094::::::s::::::23:\n"
    "fpr:::::::::9DC858229FC7DD38854AE2D88D81803C0EBFCD88:\n"
)

HELLO_WORLD_OUTPUT = (
    "\n"
    "Hello from Docker!\n"
    "This message shows that your installation appears to be working correctly.\n"
)


class FakeCommands:
    """
    Stands in for provisioning.run_command. Records every command, returns
    canned stdout by command prefix, and fails commands listed in failures
    with the given exit status.
    """

    def __init__(self, outputs=None, failures=None):
        self.calls = []
        self.envs = []
        self.outputs = outputs or {}
        self.failures = failures or {}

    def __call__(self, cmd, check=True, capture_output=False, env=None):
        cmd = list(cmd)
        self.calls.append(cmd)
        self.envs.append(env)
        returncode = 0
        for prefix, status in self.failures.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                returncode = status
        if returncode and check:
            raise subprocess.CalledProcessError(returncode, cmd)
        if returncode == 0 and cmd[0] in ("curl", "gpg") and "-o" in cmd:
            target = cmd[cmd.index("-o") + 1]
            with open(target, "a"):
                pass
        stdout = ""
        for prefix, output in self.outputs.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                stdout = output
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")

    def ran(self, *prefix):
        return any(tuple(c[: len(prefix)]) == prefix for c in self.calls)

    def index_of(self, *prefix):
        for i, c in enumerate(self.calls):
            if tuple(c[: len(prefix)]) == prefix:
                return i
        return -1


class ProvisioningTestCase(unittest.TestCase):
    """Base class that leaves the shared logger without handlers afterwards."""

    def tearDown(self):
        for h in list(provisioning.logger.handlers):
            provisioning.logger.removeHandler(h)
            h.close()
        provisioning.logger.propagate = True


def read(path):
    with open(path) as f:
        return f.read()


def snapshot(directory):
    files = {}
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if os.path.isfile(path):
            files[name] = read(path)
    return files
