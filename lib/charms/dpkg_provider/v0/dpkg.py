# Copyright 2021 Canonical Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""A provider which converges a declared Debian package onto the host with `dpkg`.

This module reads the state of a package from the dpkg database (`dpkg -s`) or from a local
`.deb` file (`dpkg-deb -W`), and installs, upgrades, removes or purges it with `dpkg` so that
the host matches what the caller declared.

`DpkgProvider` wraps a `PackageResource`, which describes the package the caller wants. Loading
the current state never mutates the resource; the version embedded in a source file is handed
back as `LoadedState.candidate_version` for the caller to apply.

To install a package from a local file:

```python
resource = dpkg.PackageResource(
    name="wget", source="/tmp/wget_1.11.4-1ubuntu1_amd64.deb", options="--force-confold"
)
provider = dpkg.DpkgProvider(resource)
try:
    loaded = provider.load_current_state()
    logger.info("will install %s", loaded.candidate_version)
    provider.install_package(resource.package_name, loaded.candidate_version)
except dpkg.PackageError as e:
    logger.error("could not install package. Reason: %s", e.message)
```

Or let the provider decide what, if anything, needs to happen:

```python
resource = dpkg.PackageResource(name="wget", action=dpkg.PackageAction.Purge)
try:
    if dpkg.DpkgProvider(resource).ensure():
        logger.info("purged wget")
except dpkg.PackageError as e:
    logger.error("could not purge package. Reason: %s", e.message)
```

Every failure of `dpkg` or `dpkg-deb` is raised as `PackageError`. That includes
`dpkg -s` on a package which dpkg has never heard of when no source file is declared; `ensure`
instead treats such a package as not installed, so removing or purging it twice is harmless.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shlex
import string
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Literal, Mapping

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "b4a5d2f3e65c4bd59d3a8c1e7f0a6d21"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


DPKG = "dpkg"
DPKG_DEB = "dpkg-deb"
INSTALLED_STATUS = "install ok installed"
# printed by dpkg-query under LC_ALL=C for packages missing from the database
UNKNOWN_PACKAGE_MESSAGE = "is not installed and no information is available"
NONINTERACTIVE_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


class Error(Exception):
    """Base class of most errors raised by this library."""

    def __repr__(self):
        """Represent the Error."""
        return f"<{type(self).__module__}.{type(self).__name__} {self.args}>"

    @property
    def name(self):
        """Return a string representation of the model plus class."""
        return f"<{type(self).__module__}.{type(self).__name__}>"

    @property
    def message(self):
        """Return the message passed as an argument."""
        return self.args[0]


class PackageError(Error):
    """Raised when a package cannot be inspected, installed or removed."""


class PackageAction(Enum):
    """The actions a `PackageResource` can ask for."""

    Install = "install"
    Upgrade = "upgrade"
    Remove = "remove"
    Purge = "purge"


@dataclass(frozen=True)
class PackageResource:
    """The package the caller wants, as declared.

    Attributes:
        name: the name of the resource
        package_name: the name dpkg knows the package by. Defaults to `name`.
        version: the desired version, if any
        source: path to a local `.deb` file. Required to install.
        options: extra flags handed verbatim to dpkg, e.g. `--force-confold`
        action: what the caller wants done with the package
    """

    name: str
    package_name: str = ""
    version: str | None = None
    source: str | None = None
    options: str | None = None
    action: PackageAction = PackageAction.Install

    def __post_init__(self):
        if not self.package_name:
            object.__setattr__(self, "package_name", self.name)

    def with_version(self, version: str | None) -> PackageResource:
        """Return a copy of this resource which wants `version`."""
        return dataclasses.replace(self, version=version)


@dataclass(frozen=True)
class CurrentState:
    """A snapshot of what dpkg reported for a package.

    `version` is None when the package is not installed. `status` holds the raw `Status`
    field from `dpkg -s`, and is None when dpkg was not asked.
    """

    package_name: str
    version: str | None = None
    status: str | None = None

    @property
    def installed(self) -> bool:
        """Returns whether or not dpkg reported an installed version."""
        return self.version is not None


@dataclass(frozen=True)
class LoadedState:
    """The result of `DpkgProvider.load_current_state`."""

    current: CurrentState
    candidate_version: str | None = None
    source_package_name: str | None = None


@dataclass
class CommandResult:
    """The exit status, the (single pass) stdout lines and the stderr of a finished command."""

    exit_status: int
    output: Iterator[str]
    stderr: str = ""

    @property
    def unknown_package(self) -> bool:
        """Returns whether dpkg failed only because it has never heard of the package."""
        return self.exit_status == 1 and UNKNOWN_PACKAGE_MESSAGE in self.stderr


def popen(command: list[str]) -> CommandResult:
    """Run a query command with a predictable locale and capture its output.

    A non-zero exit status is returned, not raised; it's up to the caller to decide what it
    means.

    Args:
        command: the argument vector to run

    Raises:
        PackageError if the command could not be launched
    """
    env = os.environ.copy()
    env["LC_ALL"] = "C"
    logger.debug("Running '%s'", shlex.join(command))
    try:
        process = subprocess.run(
            command, capture_output=True, text=True, errors="replace", env=env
        )
    except FileNotFoundError:
        raise PackageError(f"{command[0]} not found on PATH {os.getenv('PATH')}") from None
    return CommandResult(process.returncode, iter(process.stdout.splitlines()), process.stderr)


def run_command_with_systems_locale(command: list[str], environment: Mapping[str, str]) -> None:
    """Run a command in the system's own locale, with extra environment variables.

    Args:
        command: the argument vector to run
        environment: variables to add to (or override in) the inherited environment

    Raises:
        PackageError if the command could not be launched or exits non-zero
    """
    env = os.environ.copy()
    env.update(environment)
    logger.debug("Running '%s'", shlex.join(command))
    try:
        subprocess.run(
            command, capture_output=True, check=True, text=True, errors="replace", env=env
        )
    except FileNotFoundError:
        raise PackageError(f"{command[0]} not found on PATH {os.getenv('PATH')}") from None
    except subprocess.CalledProcessError as e:
        raise PackageError(
            f"'{shlex.join(command)}' failed with exit status {e.returncode}: {e.stderr}"
        ) from None


def _source_required(name: str) -> PackageError:
    return PackageError(
        f"Source for package {name} required for action {PackageAction.Install.value}"
    )


def _iter_control_stanzas(lines: Iterable[str]) -> Iterator[dict[str, str]]:
    """Split RFC822-style `Field: value` output into one mapping per stanza.

    The first colon separates a field from its value. Continuation lines (those starting with
    whitespace) and lines without a colon are skipped, and a repeated field keeps its last
    value.
    """
    fields: dict[str, str] = {}
    for line in lines:
        line = line.rstrip("\n")
        if not line.strip():  # blank lines separate stanzas
            if fields:
                yield fields
                fields = {}
            continue
        if line[0].isspace():
            continue
        key, sep, value = line.partition(":")
        if not sep:
            logger.debug("skipping unparsable dpkg line: %s", line)
            continue
        fields[key.strip()] = value.strip()
    if fields:
        yield fields


class DpkgProvider:
    """Reads and converges the state of a single Debian package with `dpkg`.

    The provider holds nothing but the `PackageResource` it was created with. Each method runs
    at most one `dpkg` or `dpkg-deb` command, except `ensure`, which loads state and then acts.
    """

    def __init__(self, resource: PackageResource) -> None:
        self._resource = resource

    @property
    def resource(self) -> PackageResource:
        """Returns the resource this provider converges."""
        return self._resource

    def load_current_state(self) -> LoadedState:
        """Load the state of the package from its source file or from the dpkg database.

        When the resource has a source, the package name and version embedded in the file are
        read with `dpkg-deb -W`, and the version is returned as the candidate version to
        install. The installed version is then read with `dpkg -s`; a package dpkg has never
        heard of is only tolerated when it came from a source file.

        Raises:
          PackageError if the source is missing, if a source is needed but not declared, or if
          `dpkg-deb`/`dpkg` exits non-zero
        """
        resource = self._resource
        if resource.source:
            if not os.path.exists(resource.source):
                raise PackageError(f"Package {resource.source} not found")
            package_name, version = self._read_source()
            # a package file which was never installed is not an error here
            installed = self.query_installed(
                package_name or resource.package_name, missing_ok=True
            )
            return LoadedState(
                current=CurrentState(
                    package_name=resource.name, version=installed.version, status=installed.status
                ),
                candidate_version=version,
                source_package_name=package_name,
            )

        if resource.action is PackageAction.Install:
            raise _source_required(resource.name)
        return LoadedState(current=self.query_installed(resource.package_name))

    def _read_source(self) -> tuple[str | None, str | None]:
        """Return the package name and version embedded in the source file."""
        result = popen([DPKG_DEB, "-W", self._resource.source])

        package_name = version = None
        for line in result.output:
            # `dpkg-deb -W` prints "<name>\t<version>"; names may hold '-', '+' and '.'
            parts = line.strip().split(None, 1)
            if len(parts) != 2:
                logger.warning("unexpected output from dpkg-deb: %s", line)
                continue
            if package_name is None:
                package_name, version = parts[0], parts[1].strip()

        if result.exit_status != 0:
            raise PackageError(
                f"Package {self._resource.source} not found: "
                f"dpkg-deb exited with {result.exit_status}"
            )
        logger.debug("source %s contains %s %s", self._resource.source, package_name, version)
        return package_name, version

    def query_installed(self, package_name: str, missing_ok: bool = False) -> CurrentState:
        """Read the installed version of a package from the dpkg database with `dpkg -s`.

        Args:
          package_name: the name of the package to look for
          missing_ok: return an empty state, rather than raise, for a package dpkg has never
            heard of (or has forgotten after removing or purging it)

        Raises:
          PackageError if `dpkg -s` exits non-zero, which includes packages unknown to dpkg
          unless `missing_ok` is set
        """
        result = popen([DPKG, "-s", package_name])

        status = version = None
        for fields in _iter_control_stanzas(result.output):
            status = fields.get("Status")
            if status != INSTALLED_STATUS:
                # known to dpkg (e.g. removed, config files left) but not installed
                continue
            if "Version" in fields:
                version = fields["Version"]
                break

        if result.exit_status != 0:
            if missing_ok and result.unknown_package:
                logger.debug("%s is unknown to dpkg", package_name)
                return CurrentState(package_name=package_name)
            raise PackageError(
                f"Package {package_name} not found: dpkg -s exited with {result.exit_status}"
            )
        return CurrentState(package_name=package_name, version=version, status=status)

    def _dpkg(self, mode: str, target: str) -> None:
        """Run `dpkg <mode> [options] <target>` non-interactively."""
        try:
            options = shlex.split(self._resource.options) if self._resource.options else []
        except ValueError as e:
            raise PackageError(f"Invalid options {self._resource.options!r}: {e}") from None
        run_command_with_systems_locale([DPKG, mode, *options, target], NONINTERACTIVE_ENV)

    def install_package(self, name: str, version: str | None) -> None:
        """Install the source file with `dpkg -i`.

        `name` and `version` are accepted for symmetry with the other actions; the version
        embedded in the source file is what gets installed.

        Raises:
          PackageError if no source is declared or dpkg fails
        """
        if not self._resource.source:
            raise _source_required(name)
        logger.info("installing %s from %s", name, self._resource.source)
        self._dpkg("-i", self._resource.source)

    def upgrade_package(self, name: str, version: str | None) -> None:
        """Upgrade the package; `dpkg -i` already upgrades in place."""
        self.install_package(name, version)

    def remove_package(self, name: str, version: str | None) -> None:
        """Remove the package with `dpkg -r`, leaving its configuration files."""
        logger.info("removing %s", name)
        self._dpkg("-r", name)

    def purge_package(self, name: str, version: str | None) -> None:
        """Purge the package and its configuration files with `dpkg -P`."""
        logger.info("purging %s", name)
        self._dpkg("-P", name)

    def ensure(self, action: PackageAction | None = None) -> bool:
        """Bring the package into line with `action`, doing nothing if it already is.

        Args:
          action: the action to converge to, defaulting to the resource's action

        Returns:
          True if a dpkg command was run to change the package

        Raises:
          PackageError from loading the state or from the underlying call to dpkg
        """
        resource = self._resource
        action = action if action is not None else resource.action

        if action in (PackageAction.Install, PackageAction.Upgrade) and resource.source:
            loaded = self.load_current_state()
            current = loaded.current
            if (
                current.installed
                and loaded.candidate_version is not None
                and Version.from_string(loaded.candidate_version)
                <= Version.from_string(current.version)
            ):
                logger.info("%s %s is already installed", resource.name, current.version)
                return False
            desired = resource.with_version(loaded.candidate_version)
            if action is PackageAction.Install:
                self.install_package(desired.package_name, desired.version)
            else:
                self.upgrade_package(desired.package_name, desired.version)
            return True

        if action is PackageAction.Install:
            raise _source_required(resource.name)

        current = self.query_installed(resource.package_name, missing_ok=True)

        if action is PackageAction.Upgrade:
            if current.installed and (
                resource.version is None
                or Version.from_string(resource.version) <= Version.from_string(current.version)
            ):
                logger.info("%s %s is up to date", current.package_name, current.version)
                return False
            # falls through to install_package, which wants a source
            self.upgrade_package(resource.package_name, resource.version)
            return True

        if action is PackageAction.Remove:
            if not current.installed:
                logger.info("%s is not installed, nothing to remove", current.package_name)
                return False
            self.remove_package(resource.package_name, current.version)
            return True

        # Purge: anything dpkg still knows about, config files included
        if current.status is None or current.status.endswith("not-installed"):
            logger.info("%s is unknown to dpkg, nothing to purge", current.package_name)
            return False
        self.purge_package(resource.package_name, current.version)
        return True


class Version:
    """A Debian package version, ordered the way `dpkg --compare-versions` orders them.

    See https://www.debian.org/doc/debian-policy/ch-controlfields.html#version
    """

    def __init__(self, upstream: str, revision: str = "0", epoch: int = 0):
        self._upstream = upstream
        self._revision = revision
        self._epoch = epoch

    @classmethod
    def from_string(cls, version: str) -> Version:
        """Split `[epoch:]upstream[-revision]` into its parts.

        Raises:
          PackageError if the epoch is not a number or the upstream version is empty
        """
        epoch, sep, rest = version.strip().partition(":")
        if not sep:
            epoch, rest = "0", version.strip()
        if not epoch or not all(char in string.digits for char in epoch):
            raise PackageError(f"Invalid version {version!r}: epoch must be a number")
        upstream, sep, revision = rest.rpartition("-")
        if not sep:
            upstream, revision = rest, "0"
        if not upstream:
            raise PackageError(f"Invalid version {version!r}: empty upstream version")
        return cls(upstream, revision, int(epoch))

    def __repr__(self):
        """Represent the version."""
        return f"<{self.__module__}.{type(self).__name__}: {self}>"

    def __str__(self):
        """Return the version as dpkg would print it."""
        epoch = f"{self._epoch}:" if self._epoch else ""
        revision = f"-{self._revision}" if self._revision != "0" else ""
        return f"{epoch}{self._upstream}{revision}"

    @property
    def epoch(self) -> int:
        """Returns the epoch, 0 when unset."""
        return self._epoch

    @property
    def upstream(self) -> str:
        """Returns the upstream part of the version."""
        return self._upstream

    @property
    def revision(self) -> str:
        """Returns the Debian revision, "0" when unset."""
        return self._revision

    @staticmethod
    def _order(char: str) -> int:
        """Sort weight of a single non-digit character."""
        if char == "~":
            return -1
        if char in string.ascii_letters:
            return ord(char)
        return ord(char) + 256

    @classmethod
    def _compare_part(cls, a: str, b: str) -> Literal[-1, 0, 1]:
        """Compare an upstream or revision part, alternating non-digit and digit runs."""
        digits = string.digits
        i = j = 0
        while i < len(a) or j < len(b):
            # non-digit run; the end of a string sorts after '~' and before anything else
            while (i < len(a) and a[i] not in digits) or (j < len(b) and b[j] not in digits):
                ac = cls._order(a[i]) if i < len(a) and a[i] not in digits else 0
                bc = cls._order(b[j]) if j < len(b) and b[j] not in digits else 0
                if ac != bc:
                    return -1 if ac < bc else 1
                i += 1
                j += 1
            start_i, start_j = i, j
            while i < len(a) and a[i] in digits:
                i += 1
            while j < len(b) and b[j] in digits:
                j += 1
            an = int(a[start_i:i] or 0)
            bn = int(b[start_j:j] or 0)
            if an != bn:
                return -1 if an < bn else 1
        return 0

    def _compare(self, other: Version) -> Literal[-1, 0, 1]:
        if self._epoch != other._epoch:
            return -1 if self._epoch < other._epoch else 1
        return self._compare_part(self._upstream, other._upstream) or self._compare_part(
            self._revision, other._revision
        )

    def __eq__(self, other: object) -> bool:
        """Equality magic method impl."""
        if not isinstance(other, Version):
            return False
        return self._compare(other) == 0

    def __hash__(self):
        """Return a hash of this version."""
        return hash(str(self))

    def __lt__(self, other: Version) -> bool:
        """Less than magic method impl."""
        return self._compare(other) < 0

    def __gt__(self, other: Version) -> bool:
        """Greater than magic method impl."""
        return self._compare(other) > 0

    def __le__(self, other: Version) -> bool:
        """Less than or equal to magic method impl."""
        return self._compare(other) <= 0

    def __ge__(self, other: Version) -> bool:
        """Greater than or equal to magic method impl."""
        return self._compare(other) >= 0
