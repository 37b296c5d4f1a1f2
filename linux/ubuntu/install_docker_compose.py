#!/usr/bin/env python3
"""
Docker and Docker-Compose Installer

Installs Docker CE and Docker-Compose on a totally new and blank Ubuntu server,
based on https://docs.docker.com/engine/installation/linux/docker-ce/ubuntu/

Steps, in order:
  1. Install packages so apt can use a repository over HTTPS
  2. Fetch Docker's signing key and verify its fingerprint
  3. Trust the key and register Docker's apt repository
  4. Install a pinned Docker CE version
  5. Smoke test: docker run hello-world
  6. Enable Docker at boot
  7. Install a pinned Docker-Compose release

A bad key fingerprint or a failing smoke test stops the installation with
exit status 1. Nothing is retried; someone needs to look at the server.

Run this script as root. It takes no options.

Author: Talkyard (refactored)
License: MIT
Version: 1.0.0
"""

import os
import platform
import subprocess
import tempfile
from typing import List, Optional

import typer

from provisioning import (
    LOG_FILE,
    ProvisioningError,
    StepReport,
    VerificationError,
    check_root,
    log_verification_failure,
    logger,
    print_header,
    run_command,
    setup_logging,
    write_file,
)

#####################################
# Global Configuration & Constants
#####################################

SCRIPT_ID = "install-docker"

PREREQUISITE_PACKAGES = [
    "apt-transport-https",
    "ca-certificates",
    "curl",
    "gnupg-agent",
    "software-properties-common",
]

DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
# See https://docs.docker.com/engine/installation/linux/ubuntu/#install-using-the-repository
DOCKER_KEY_FINGERPRINT = "9DC8 5822 9FC7 DD38 854A  E2D8 8D81 803C 0EBF CD88"
DOCKER_KEYRING = "/etc/apt/keyrings/docker.gpg"
DOCKER_SOURCES_LIST = "/etc/apt/sources.list.d/docker.list"
DOCKER_REPO_URL = "https://download.docker.com/linux/ubuntu"

# List versions: apt-cache madison docker-ce
DOCKER_VERSION = "5:19.03.5~3-0~ubuntu-bionic"

SMOKE_TEST_IMAGE = "hello-world"
SMOKE_TEST_GREETING = "hello "

# See https://github.com/docker/compose/releases
COMPOSE_VERSION = "1.25.1"
COMPOSE_RELEASES_URL = "https://github.com/docker/compose/releases/download"
COMPOSE_BINARY = "/usr/local/bin/docker-compose"

SCRIPT_URL = (
    "https://github.com/debiki/talkyard-prod-one/blob/master/"
    "scripts/install-docker-compose.sh"
)

app = typer.Typer(
    help="Install Docker CE and Docker-Compose on a blank Ubuntu server.",
    add_completion=False,
)

#####################################
# Helpers
#####################################


def normalize_fingerprint(fingerprint: str) -> str:
    return "".join(fingerprint.split()).upper()


def parse_primary_fingerprints(colon_output: str) -> List[str]:
    """
    Primary key fingerprints from `gpg --with-colons` output: field 10 of the
    'fpr' record that follows each 'pub' record. Subkey fingerprints are
    ignored.
    """
    fingerprints = []
    after_pub = False
    for line in colon_output.splitlines():
        fields = line.split(":")
        if fields[0] == "pub":
            after_pub = True
        elif fields[0] == "fpr":
            if after_pub and len(fields) > 9 and fields[9]:
                fingerprints.append(fields[9].upper())
            after_pub = False
        elif fields[0] in ("sub", "sec", "ssb"):
            after_pub = False
    return fingerprints


def compose_download_url(
    version: str = COMPOSE_VERSION,
    system: Optional[str] = None,
    machine: Optional[str] = None,
) -> str:
    # Same as `uname -s` and `uname -m`.
    system = system or platform.system()
    machine = machine or platform.machine()
    return f"{COMPOSE_RELEASES_URL}/{version}/docker-compose-{system}-{machine}"


#####################################
# Docker Installer
#####################################


class DockerInstaller:
    def __init__(
        self,
        keyring: str = DOCKER_KEYRING,
        sources_list: str = DOCKER_SOURCES_LIST,
        compose_binary: str = COMPOSE_BINARY,
        report: Optional[StepReport] = None,
    ) -> None:
        self.keyring = keyring
        self.sources_list = sources_list
        self.compose_binary = compose_binary
        self.report = report or StepReport()
        self.key_file: Optional[str] = None

    def run(self) -> None:
        logger.info("")
        logger.info("Installing Docker and Docker-Compose...")
        try:
            self.report.run(
                "Installing HTTPS transport packages", self.install_prerequisites
            )
            self.report.run("Fetching Docker's GPG key", self.fetch_signing_key)
            self.report.run(
                "Verifying the GPG key fingerprint", self.verify_key_fingerprint
            )
            self.report.run("Trusting the GPG key", self.trust_signing_key)
            self.report.run(
                "Registering Docker's repository", self.register_repository
            )
        finally:
            self.remove_key_file()
        self.report.run(f"Installing docker-ce={DOCKER_VERSION}", self.install_runtime)
        self.report.run("Testing Docker", self.smoke_test)
        self.report.run("Enabling Docker at boot", self.enable_runtime)
        self.report.run(
            f"Installing Docker-Compose {COMPOSE_VERSION}", self.install_compose
        )
        self.report_versions()

    def install_prerequisites(self) -> None:
        run_command(["apt-get", "update"])
        run_command(["apt-get", "-y", "install"] + PREREQUISITE_PACKAGES)

    def fetch_signing_key(self) -> str:
        fd, self.key_file = tempfile.mkstemp(prefix="talkyard_setup_", suffix=".asc")
        os.close(fd)
        run_command(["curl", "-fsSL", DOCKER_GPG_URL, "-o", self.key_file])
        return self.key_file

    def verify_key_fingerprint(self) -> None:
        if not self.key_file:
            raise ProvisioningError("No Docker GPG key has been fetched.")
        result = run_command(
            [
                "gpg",
                "--show-keys",
                "--with-colons",
                "--with-fingerprint",
                self.key_file,
            ],
            check=False,
            capture_output=True,
        )
        # The whole file goes into the keyring, so it must hold Docker's key only.
        fingerprints = parse_primary_fingerprints(result.stdout or "")
        if fingerprints != [normalize_fingerprint(DOCKER_KEY_FINGERPRINT)]:
            logger.debug(f"Primary key fingerprints found: {fingerprints}")
            raise VerificationError(
                "Bad Docker GPG key fingerprint.",
                "TyEDKRFNGR",
                [
                    "Don't continue installing.",
                    "Instead, ask for help in the Docker forums: https://forums.docker.com/,",
                    "and show them the output from running this:",
                    f"    curl -fsSL {DOCKER_GPG_URL} | gpg --show-keys",
                    "and include a link to this script too, here it is:",
                    f"    {SCRIPT_URL}",
                ],
            )
        logger.info("Docker GPG key fingerprint is correct.")

    def trust_signing_key(self) -> None:
        os.makedirs(os.path.dirname(self.keyring), mode=0o755, exist_ok=True)
        run_command(
            ["gpg", "--dearmor", "--yes", "-o", self.keyring, self.key_file]
        )
        os.chmod(self.keyring, 0o644)

    def register_repository(self) -> None:
        codename = run_command(["lsb_release", "-cs"], capture_output=True).stdout
        codename = codename.strip()
        line = (
            f"deb [arch=amd64 signed-by={self.keyring}] "
            f"{DOCKER_REPO_URL} {codename} stable\n"
        )
        write_file(self.sources_list, line)
        logger.info(f"Docker repository for '{codename}' added to {self.sources_list}.")

    def remove_key_file(self) -> None:
        if self.key_file and os.path.exists(self.key_file):
            os.remove(self.key_file)
        self.key_file = None

    def install_runtime(self) -> None:
        # Upgrade later with: service docker stop; apt-get update;
        # apt-get -y install docker-ce=VERSION
        run_command(["apt-get", "update"])
        run_command(["apt-get", "-y", "install", f"docker-ce={DOCKER_VERSION}"])

    def smoke_test(self) -> None:
        logger.info(f"Testing Docker: running 'docker run {SMOKE_TEST_IMAGE}' ...")
        result = run_command(
            ["docker", "run", SMOKE_TEST_IMAGE], check=False, capture_output=True
        )
        greeting = [
            line
            for line in (result.stdout or "").splitlines()
            if SMOKE_TEST_GREETING in line.lower()
        ]
        if not greeting:
            raise VerificationError(
                "Error installing or starting Docker: "
                f"'docker run {SMOKE_TEST_IMAGE}' doesn't work.",
                "EdEDKRBROKEN",
                [
                    "Ask for help in the Talkyard forum: https://www.talkyard.io/forum/",
                    "and/or in the Docker forums: https://forums.docker.com/",
                ],
            )
        logger.info("Docker worked fine. Installing Docker-Compose ...")

    def enable_runtime(self) -> None:
        run_command(["service", "docker", "start"])
        # Start automatically on server startup.
        run_command(["systemctl", "enable", "docker"])

    def install_compose(self) -> None:
        url = compose_download_url()
        run_command(["curl", "-fL", url, "-o", self.compose_binary])
        os.chmod(self.compose_binary, 0o755)

    def report_versions(self) -> None:
        logger.info("")
        logger.info("*** Done ***")
        logger.info("")
        logger.info("Docker and Docker-Compose installed.")
        logger.info("")
        logger.info(
            f"This should print 'docker-compose version {COMPOSE_VERSION} ...' or later:"
        )
        logger.info("----------------------------")
        result = run_command([self.compose_binary, "-v"], capture_output=True)
        logger.info((result.stdout or "").strip())
        logger.info("----------------------------")
        logger.info("")


#####################################
# Command Line Entry Point
#####################################


@app.command()
def install() -> None:
    """Install Docker and Docker-Compose. Stops on any failed verification."""
    setup_logging(SCRIPT_ID, LOG_FILE)
    print_header("Docker Setup")
    report = StepReport()
    try:
        check_root()
        DockerInstaller(report=report).run()
    except VerificationError as e:
        log_verification_failure(e)
        raise typer.Exit(code=1)
    except ProvisioningError as e:
        logger.error(f"ERROR: {e}")
        raise typer.Exit(code=1)
    except subprocess.CalledProcessError as e:
        logger.error(f"Aborting: {' '.join(e.cmd)} exited with status {e.returncode}.")
        raise typer.Exit(code=e.returncode if e.returncode > 0 else 1)
    except OSError as e:
        logger.error(f"Aborting: {e}")
        raise typer.Exit(code=1)
    finally:
        report.print()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
