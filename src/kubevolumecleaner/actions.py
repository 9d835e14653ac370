"""Writes applied to PersistentVolumeClaims."""

from __future__ import annotations

__all__ = ("ClaimActions",)

from typing import Any

import structlog
from kubernetes.client.exceptions import ApiException

from kubevolumecleaner.resources import MANAGED_BY_LABEL, get_managed_by


class ClaimActions:
    """Update the managed-by label of claims and delete orphaned claims.

    Every method receives a claim manifest that the caller owns, such as a
    copy handed out by the cache, and may modify it.

    Parameters
    ----------
    core_api
        A ``kubernetes.client.CoreV1Api`` instance.
    dry_run : `bool`
        If `True`, deletions are logged instead of executed. Label writes
        still happen.
    """

    def __init__(self, core_api: Any, *, dry_run: bool = False) -> None:
        self.core_api = core_api
        self.dry_run = dry_run
        self._logger = structlog.get_logger(__name__)

    def set_managed_by(self, claim: dict[str, Any], statefulset: str) -> bool:
        """Set the managed-by label of a claim.

        Returns
        -------
        updated : `bool`
            `False` if the label already had this value and nothing was
            written.
        """
        old_value = get_managed_by(claim)
        if old_value == statefulset:
            return False

        metadata = claim["metadata"]
        labels = metadata.get("labels") or {}
        labels[MANAGED_BY_LABEL] = statefulset
        metadata["labels"] = labels

        logger = self._logger.bind(
            namespace=metadata.get("namespace"),
            claim=metadata["name"],
            label=MANAGED_BY_LABEL,
        )
        if not old_value:
            logger.info("Adding label", value=statefulset)
        else:
            logger.info("Updating label", old=old_value, value=statefulset)
        self._replace(claim)
        return True

    def remove_managed_by(self, claim: dict[str, Any]) -> bool:
        """Remove the managed-by label from a claim.

        Returns
        -------
        updated : `bool`
            `False` if the claim had no such label and nothing was written.
        """
        if get_managed_by(claim) is None:
            return False

        metadata = claim["metadata"]
        del metadata["labels"][MANAGED_BY_LABEL]
        self._logger.info(
            "Removing label",
            namespace=metadata.get("namespace"),
            claim=metadata["name"],
            label=MANAGED_BY_LABEL,
        )
        self._replace(claim)
        return True

    def delete(self, claim: dict[str, Any]) -> bool:
        """Delete a claim, unless running in dry-run mode.

        Returns
        -------
        deleted : `bool`
            `True` if a delete call was issued.
        """
        metadata = claim["metadata"]
        logger = self._logger.bind(
            namespace=metadata.get("namespace"), claim=metadata["name"]
        )
        if self.dry_run:
            logger.info("Would delete claim, but dry run is enabled")
            return False

        logger.info("Deleting claim")
        try:
            self.core_api.delete_namespaced_persistent_volume_claim(
                name=metadata["name"], namespace=metadata.get("namespace")
            )
        except ApiException as exc:
            if exc.status != 404:
                raise
            logger.debug("Claim was already deleted")
        return True

    def _replace(self, claim: dict[str, Any]) -> None:
        metadata = claim["metadata"]
        self.core_api.replace_namespaced_persistent_volume_claim(
            name=metadata["name"],
            namespace=metadata.get("namespace"),
            body=claim,
        )
