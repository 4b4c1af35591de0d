#!/usr/bin/env python3
# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.


"""A machine charm which keeps a single Debian package in the configured state."""

import logging

from charms.dpkg_provider.v0 import dpkg
from ops.charm import CharmBase
from ops.main import main
from ops.model import ActiveStatus, BlockedStatus, MaintenanceStatus

logger = logging.getLogger(__name__)


class DpkgProviderCharm(CharmBase):
    """Converge the configured package with dpkg on install and config-changed."""

    def __init__(self, *args):
        super().__init__(*args)
        self.framework.observe(self.on.install, self._on_converge)
        self.framework.observe(self.on.config_changed, self._on_converge)

    def _resource_from_config(self) -> dpkg.PackageResource:
        """Build the declared package from charm config.

        Raises:
          ValueError if `action` is not a known package action
        """
        config = self.model.config
        return dpkg.PackageResource(
            name=config.get("package", ""),
            version=config.get("version") or None,
            source=config.get("source") or None,
            options=config.get("options") or None,
            action=dpkg.PackageAction(config.get("action", "install")),
        )

    def _on_converge(self, _):
        if not self.model.config.get("package"):
            self.unit.status = BlockedStatus("package not configured")
            return

        try:
            resource = self._resource_from_config()
        except ValueError:
            self.unit.status = BlockedStatus(f"invalid action: {self.model.config['action']}")
            return

        self.unit.status = MaintenanceStatus(f"{resource.action.value} {resource.name}")
        try:
            changed = dpkg.DpkgProvider(resource).ensure()
        except dpkg.PackageError as e:
            logger.error("could not %s %s. Reason: %s", resource.action.value, resource.name, e)
            self.unit.status = BlockedStatus(e.message)
            return

        if changed:
            logger.info("%s: %s done", resource.name, resource.action.value)
        self.unit.status = ActiveStatus()


if __name__ == "__main__":
    main(DpkgProviderCharm)
