#!/usr/bin/env python3
"""
Ubuntu Host Preparation for Talkyard

Makes ElasticSearch and Redis work in their Docker containers, lets Nginx
handle more connections, simplifies troubleshooting, and configures automatic
security updates with reboots. Steps, in order:
  1. Locale
  2. Diagnostic packages
  3. Kernel parameters (sysctl)
  4. Transparent Huge Pages
  5. Shell history
  6. Unattended upgrades

Every step that edits a file first looks for a marker in it and does nothing
if the marker is already there, so running this script again is safe.

Run this script as root. It takes no options.

Author: Talkyard (refactored)
License: MIT
Version: 1.0.0
"""

import os
import subprocess
from typing import Dict, Optional

import typer

from provisioning import (
    LOG_FILE,
    ProvisioningError,
    StepReport,
    append_block_once,
    check_root,
    insert_before_last_line_once,
    logger,
    print_header,
    run_command,
    setup_logging,
    write_file,
)

#####################################
# Global Configuration & Constants
#####################################

SCRIPT_ID = "configure-ubuntu"

LOCALE = "en_US.UTF-8"
LOCALE_FILE = "/etc/default/locale"
SYSCTL_CONF = "/etc/sysctl.conf"
RC_LOCAL = "/etc/rc.local"
THP_ENABLED_FILE = "/sys/kernel/mm/transparent_hugepage/enabled"
AUTO_UPGRADES_FILE = "/etc/apt/apt.conf.d/20auto-upgrades"

DIAGNOSTIC_PACKAGES = ["jq", "rng-tools", "tree"]
UNATTENDED_UPGRADE_PACKAGES = ["unattended-upgrades", "update-notifier-common"]

SYSCTL_MARKER = "Talkyard"
THP_MARKER = "transparent_hugepage/enabled"
HISTORY_MARKER = "HISTTIMEFORMAT"

# Sync net.core.somaxconn with the Nginx listen backlog. [BACKLGSZ]
SYSCTL_SETTINGS: Dict[str, str] = {
    "vm.swappiness": "1",
    "net.core.somaxconn": "8192",
    "vm.max_map_count": "262144",
}

SYSCTL_BLOCK = f"""
###################################################################
# {SYSCTL_MARKER} settings
#
# Turn off swap, default = 60.
vm.swappiness={SYSCTL_SETTINGS["vm.swappiness"]}
# Up the max backlog queue size (num connections per port), default = 128.
# Sync with conf/sites-enabled-manual/talkyard-servers.conf.
net.core.somaxconn={SYSCTL_SETTINGS["net.core.somaxconn"]}
# ElasticSearch wants this, default = 65530
# See: https://www.elastic.co/guide/en/elasticsearch/reference/current/vm-max-map-count.html
vm.max_map_count={SYSCTL_SETTINGS["vm.max_map_count"]}
"""

THP_BLOCK = (
    "# For Talkyard and the Redis Docker container:\n"
    f"echo never > {THP_ENABLED_FILE}\n"
)

HISTORY_BLOCK = """
###################################################################
export HISTCONTROL=ignoredups
export HISTCONTROL=ignoreboth
export HISTSIZE=10100
export HISTFILESIZE=10100
export HISTTIMEFORMAT='%F %T %z  '
"""

# AutoremoveInterval: remove auto-installed dependencies no longer needed.
# AutocleanInterval: remove out-of-date downloaded archives.
# MinAge: packages aren't deleted until this many days old (default is 2).
# More docs: less /usr/lib/apt/apt.systemd.daily
AUTO_UPGRADES_CONTENT = (
    'APT::Periodic::Update-Package-Lists "1";\n'
    'APT::Periodic::Unattended-Upgrade "1";\n'
    'APT::Periodic::AutoremoveInterval "14";\n'
    'APT::Periodic::AutocleanInterval "14";\n'
    'APT::Periodic::MinAge "8";\n'
    'Unattended-Upgrade::Automatic-Reboot "true";\n'
)

app = typer.Typer(
    help="Tune an Ubuntu host for Talkyard: locale, sysctl, THP, history, upgrades.",
    add_completion=False,
)

#####################################
# Host Tuner
#####################################


class HostTuner:
    def __init__(
        self,
        locale_file: str = LOCALE_FILE,
        sysctl_conf: str = SYSCTL_CONF,
        rc_local: str = RC_LOCAL,
        thp_enabled_file: str = THP_ENABLED_FILE,
        bashrc: Optional[str] = None,
        auto_upgrades_file: str = AUTO_UPGRADES_FILE,
        report: Optional[StepReport] = None,
    ) -> None:
        self.locale_file = locale_file
        self.sysctl_conf = sysctl_conf
        self.rc_local = rc_local
        self.thp_enabled_file = thp_enabled_file
        self.bashrc = bashrc or os.path.expanduser("~/.bashrc")
        self.auto_upgrades_file = auto_upgrades_file
        self.report = report or StepReport()

    def run(self) -> None:
        logger.info("")
        logger.info("Configuring Ubuntu:")
        self.report.run("Configuring locale", self.configure_locale)
        self.report.run(
            "Installing diagnostic packages", self.install_diagnostic_packages
        )
        self.report.run("Tuning kernel parameters", self.tune_kernel)
        self.report.run(
            "Disabling Transparent Huge Pages", self.disable_transparent_hugepages
        )
        self.report.run("Configuring shell history", self.configure_shell_history)
        self.report.run(
            "Configuring unattended upgrades", self.configure_unattended_upgrades
        )
        logger.info("Done configuring Ubuntu.")
        logger.info("")

    def configure_locale(self) -> bool:
        # Avoids harmless "warning: Setting locale failed" warnings from Perl.
        run_command(["locale-gen", LOCALE])
        changed = False
        for var in ("LC_ALL", "LANG"):
            if append_block_once(self.locale_file, f"{var}=", f"{var}={LOCALE}"):
                logger.info(f"Setting {var} to {LOCALE}...")
                os.environ[var] = LOCALE
                changed = True
        return changed

    def install_diagnostic_packages(self) -> None:
        # jq for viewing json logs, rng-tools to use any hardware random
        # number generator, tree because it's nice to have.
        logger.info("Installing jq, for json logs. And rng-tools, why not...")
        run_command(["apt-get", "-y", "install"] + DIAGNOSTIC_PACKAGES)
        logger.info("Installing add-apt-repository...")
        run_command(["apt-get", "-y", "install", "software-properties-common"])

    def tune_kernel(self) -> bool:
        if not append_block_once(self.sysctl_conf, SYSCTL_MARKER, SYSCTL_BLOCK):
            logger.info(f"{self.sysctl_conf} already has the Talkyard settings.")
            return False
        logger.info(f"Amended the {self.sysctl_conf} config.")
        logger.info("Reloading the system config...")
        run_command(["sysctl", "--system"])
        return True

    def disable_transparent_hugepages(self) -> bool:
        # THP creates latency and memory usage issues with Redis. Disable it
        # now, and after every reboot, as recommended by Redis.
        logger.info("Disabling Transparent Huge Pages (for Redis)...")
        with open(self.thp_enabled_file, "w") as f:
            f.write("never\n")
        if insert_before_last_line_once(self.rc_local, THP_MARKER, THP_BLOCK):
            logger.info(
                f"Disabling Transparent Huge Pages after reboot, in {self.rc_local}..."
            )
            return True
        return False

    def configure_shell_history(self) -> bool:
        if append_block_once(self.bashrc, HISTORY_MARKER, HISTORY_BLOCK):
            logger.info(f"Added history settings to {self.bashrc}.")
            return True
        return False

    def configure_unattended_upgrades(self) -> None:
        # --force-confdef/old: don't overwrite existing configuration, ask nothing.
        logger.info("Configuring automatic security updates and reboots...")
        env = dict(os.environ, DEBIAN_FRONTEND="noninteractive")
        run_command(
            [
                "apt-get",
                "install",
                "-y",
                "-o",
                "Dpkg::Options::=--force-confdef",
                "-o",
                "Dpkg::Options::=--force-confold",
            ]
            + UNATTENDED_UPGRADE_PACKAGES,
            env=env,
        )
        write_file(self.auto_upgrades_file, AUTO_UPGRADES_CONTENT)
        logger.info(f"Auto-upgrades config written to {self.auto_upgrades_file}.")


#####################################
# Command Line Entry Point
#####################################


@app.command()
def prepare() -> None:
    """Prepare this host for Talkyard. Safe to run more than once."""
    setup_logging(SCRIPT_ID, LOG_FILE)
    print_header("Talkyard Host")
    report = StepReport()
    try:
        check_root()
        HostTuner(report=report).run()
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
