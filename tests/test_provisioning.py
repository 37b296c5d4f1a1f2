import datetime
import logging
import os
import stat
import subprocess
import tempfile
import unittest
import unittest.mock

import provisioning
from fakes import ProvisioningTestCase, read


class TestMarkerGuardedEdits(ProvisioningTestCase):
    def test_missing_file_has_no_marker(self):
        with tempfile.TemporaryDirectory() as td:
            self.assertFalse(
                provisioning.file_has_marker(os.path.join(td, "nope"), "x")
            )

    def test_append_block_once_appends_then_skips(self):
        with tempfile.TemporaryDirectory() as td:
            p = os.path.join(td, "sysctl.conf")
            with open(p, "w") as f:
                f.write("kernel.sysrq=0\n")

            self.assertTrue(
                provisioning.append_block_once(p, "Talkyard", "# Talkyard\nvm.swappiness=1")
            )
            first = read(p)
            self.assertFalse(
                provisioning.append_block_once(p, "Talkyard", "# Talkyard\nvm.swappiness=1")
            )

            self.assertEqual(first, read(p))
            self.assertEqual(first, "kernel.sysrq=0\n# Talkyard\nvm.swappiness=1\n")

    def test_append_block_once_creates_missing_file(self):
        with tempfile.TemporaryDirectory() as td:
            p = os.path.join(td, "locale")
            self.assertTrue(provisioning.append_block_once(p, "LANG=", "LANG=en_US.UTF-8"))
            self.assertEqual(read(p), "LANG=en_US.UTF-8\n")

    def test_append_block_once_propagates_io_errors(self):
        with tempfile.TemporaryDirectory() as td:
            p = os.path.join(td, "missing-dir", "file")
            with self.assertRaises(OSError):
                provisioning.append_block_once(p, "m", "block")

    def test_insert_before_last_line(self):
        with tempfile.TemporaryDirectory() as td:
            p = os.path.join(td, "rc.local")
            with open(p, "w") as f:
                f.write("#!/bin/sh -e\n\nexit 0\n")

            self.assertTrue(
                provisioning.insert_before_last_line_once(p, "thp", "echo thp\n")
            )
            self.assertEqual(read(p), "#!/bin/sh -e\n\necho thp\nexit 0\n")

            self.assertFalse(
                provisioning.insert_before_last_line_once(p, "thp", "echo thp\n")
            )
            self.assertEqual(read(p).count("echo thp"), 1)

    def test_insert_before_last_line_creates_executable_script(self):
        with tempfile.TemporaryDirectory() as td:
            p = os.path.join(td, "rc.local")
            provisioning.insert_before_last_line_once(p, "thp", "echo thp")

            content = read(p)
            self.assertTrue(content.startswith("#!/bin/sh -e\n"))
            self.assertTrue(content.endswith("echo thp\nexit 0\n"))
            self.assertTrue(os.stat(p).st_mode & stat.S_IXUSR)

    def test_write_file_overwrites_and_sets_mode(self):
        with tempfile.TemporaryDirectory() as td:
            p = os.path.join(td, "f")
            provisioning.write_file(p, "one\n")
            provisioning.write_file(p, "two\n", mode=0o600)
            self.assertEqual(read(p), "two\n")
            self.assertEqual(stat.S_IMODE(os.stat(p).st_mode), 0o600)


class TestLogging(ProvisioningTestCase):
    def test_formatter_uses_iso_utc_and_script_id(self):
        created = datetime.datetime(
            2020, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc
        ).timestamp()
        record = logging.makeLogRecord(
            {"msg": "Configuring Ubuntu:", "levelname": "INFO", "created": created}
        )
        formatter = provisioning.IsoUtcFormatter("configure-ubuntu")
        self.assertEqual(
            formatter.format(record),
            "2020-01-02T03:04:05+00:00 configure-ubuntu: Configuring Ubuntu:",
        )

    def test_setup_logging_writes_debug_to_file(self):
        with tempfile.TemporaryDirectory() as td:
            log_file = os.path.join(td, "logs", "provisioning.log")
            with unittest.mock.patch("sys.stdout"):
                logger = provisioning.setup_logging("install-docker", log_file)
                logger.debug("Executing command: true")
            for h in logger.handlers:
                h.flush()
            self.assertIn("install-docker: Executing command: true", read(log_file))

    def test_setup_logging_replaces_handlers(self):
        with unittest.mock.patch("sys.stdout"):
            provisioning.setup_logging("a")
            provisioning.setup_logging("b")
        self.assertEqual(len(provisioning.logger.handlers), 1)


class TestStepReport(ProvisioningTestCase):
    def setUp(self):
        self._print = unittest.mock.patch.object(provisioning.console, "print")
        self._print.start()

    def tearDown(self):
        self._print.stop()
        super().tearDown()

    def test_statuses(self):
        report = provisioning.StepReport()
        report.run("changed", lambda: True)
        report.run("no return value", lambda: None)
        report.run("already applied", lambda: False)
        self.assertEqual(
            report.statuses(),
            {
                "changed": "success",
                "no return value": "success",
                "already applied": "skipped",
            },
        )

    def test_failure_is_recorded_and_reraised(self):
        report = provisioning.StepReport()

        def boom():
            raise provisioning.ProvisioningError("nope")

        with self.assertRaises(provisioning.ProvisioningError):
            report.run("broken", boom)
        self.assertEqual(report.statuses(), {"broken": "failed"})
        report.print()


class TestCommandsAndChecks(ProvisioningTestCase):
    def test_run_command_reraises_failures(self):
        error = subprocess.CalledProcessError(100, ["apt-get", "update"])
        with unittest.mock.patch.object(
            provisioning.subprocess, "run", side_effect=error
        ):
            with self.assertRaises(subprocess.CalledProcessError) as ctx:
                provisioning.run_command(["apt-get", "update"])
        self.assertEqual(ctx.exception.returncode, 100)

    def test_run_command_passes_env(self):
        completed = subprocess.CompletedProcess(["true"], 0)
        with unittest.mock.patch.object(
            provisioning.subprocess, "run", return_value=completed
        ) as run:
            provisioning.run_command(["true"], env={"DEBIAN_FRONTEND": "noninteractive"})
        self.assertEqual(
            run.call_args.kwargs["env"], {"DEBIAN_FRONTEND": "noninteractive"}
        )

    def test_run_command_sends_no_stdin(self):
        completed = subprocess.CompletedProcess(["true"], 0)
        with unittest.mock.patch.object(
            provisioning.subprocess, "run", return_value=completed
        ) as run:
            provisioning.run_command(["true"])
        self.assertNotIn("input", run.call_args.kwargs)
        with self.assertRaises(TypeError):
            provisioning.run_command(["true"], input="y\n")

    def test_check_root(self):
        with unittest.mock.patch("os.geteuid", return_value=1000):
            with self.assertRaises(provisioning.ProvisioningError):
                provisioning.check_root()
        with unittest.mock.patch("os.geteuid", return_value=0):
            provisioning.check_root()

    def test_verification_error_str_has_reference(self):
        e = provisioning.VerificationError("Bad key.", "TyEDKRFNGR", ["ask"])
        self.assertEqual(str(e), "Bad key. [TyEDKRFNGR]")
        self.assertEqual(e.hints, ["ask"])


class TestModuleHeaders(unittest.TestCase):
    def test_docstrings_carry_license_and_version(self):
        import install_docker_compose
        import prepare_ubuntu

        for module in (provisioning, prepare_ubuntu, install_docker_compose):
            with self.subTest(module=module.__name__):
                self.assertIn("License: MIT", module.__doc__)
                self.assertIn("Version: 1.0.0", module.__doc__)


if __name__ == "__main__":
    unittest.main()
