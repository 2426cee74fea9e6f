"""Representation of the objects held in the record store.

A `ReleaseRequest` is the desired state for a single Helm release: which chart
to install, where to fetch it from and which values to use. A `ReleaseSecret`
is the artifact written back for a successfully installed release, owned by
the request so that deleting the request removes it too.

Requests are typically parsed from a Kubernetes style document:
```python
import yaml
from release_controller.manifest import ReleaseRequest

request = ReleaseRequest.parse_doc(yaml.safe_load('''
apiVersion: app.release-controller.dev/v1alpha1
kind: HelmRelease
metadata:
  name: podinfo
  namespace: default
spec:
  chartName: podinfo
  source:
    sourceType: helmrepo
    helmRepo:
      urls:
      - https://example.com/charts/podinfo-6.0.0.tgz
'''))
```
"""

import datetime
from dataclasses import dataclass, field
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "OwnerReference",
    "GitSource",
    "RepoSource",
    "ReleaseRequest",
    "ReleaseSecret",
]

_LOGGER = logging.getLogger(__name__)


API_DOMAIN = "app.release-controller.dev"
HELM_RELEASE = "HelmRelease"
SECRET_KIND = "Secret"

SOURCE_TYPE_GIT = "git"
SOURCE_TYPE_HELM_REPO = "helmrepo"
# Older requests name the git source type after the hosting service
_GIT_SOURCE_ALIASES = {SOURCE_TYPE_GIT, "github"}

FINALIZER = f"{API_DOMAIN}/uninstall-release"
INSTALLED_RELEASE_ANNOTATION = f"{API_DOMAIN}/installed-release-name"
OWNER_NAME_LABEL = f"{API_DOMAIN}/owner-name"
OWNER_NAMESPACE_LABEL = f"{API_DOMAIN}/owner-namespace"


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for an object in the record store."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass
class OwnerReference(BaseManifest):
    """A back-reference from a dependent object to the object that owns it."""

    kind: str
    """The kind of the owner."""

    name: str
    """The name of the owner, in the same namespace as the dependent."""

    uid: str
    """The uid of the owner, used to match the owner across re-creation."""

    controller: bool = True
    """True when the owner is the managing controller of the dependent."""


@dataclass(kw_only=True)
class StoredObject(BaseManifest):
    """Metadata common to all objects held in the record store."""

    uid: str = ""
    """Unique id assigned by the store on creation."""

    resource_version: int = 0
    """Version assigned by the store, incremented on every write."""

    labels: dict[str, str] = field(default_factory=dict)
    """Labels on the object."""

    annotations: dict[str, str] = field(default_factory=dict)
    """Annotations on the object."""

    finalizers: list[str] = field(default_factory=list)
    """Markers that block physical deletion of the object."""

    owner_references: list[OwnerReference] = field(default_factory=list)
    """Owners of this object, used for cascading deletion."""

    deletion_timestamp: datetime.datetime | None = None
    """Set by the store when deletion was requested but finalizers remain."""

    @property
    def resource_id(self) -> NamedResource:
        """Identifier for this object in the store."""
        return NamedResource(
            getattr(self, "kind"), getattr(self, "namespace"), getattr(self, "name")
        )


@dataclass
class GitSource(BaseManifest):
    """Chart content held in a subpath of a git repository."""

    urls: list[str]
    """Clone URLs, tried in order."""

    subpath: str
    """Path of the chart directory within the repository."""

    ref: str | None = None
    """Optional branch, tag or commit to check out."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "GitSource":
        """Parse a GitSource from a source document."""
        return cls(
            urls=list(doc.get("urls") or []),
            subpath=doc.get("chartPath") or doc.get("subpath") or "",
            ref=doc.get("ref") or doc.get("branch"),
        )


@dataclass
class RepoSource(BaseManifest):
    """Chart content published as a packaged archive."""

    urls: list[str]
    """Archive URLs, tried in order until one responds."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "RepoSource":
        """Parse a RepoSource from a source document."""
        return cls(urls=list(doc.get("urls") or []))


ChartSource = GitSource | RepoSource


def _parse_source(doc: dict[str, Any] | None) -> ChartSource | None:
    """Parse the tagged source union, returning None when it is not set."""
    if not doc:
        return None
    source_type = (doc.get("sourceType") or "").lower()
    if source_type in _GIT_SOURCE_ALIASES:
        if (git := doc.get("git") or doc.get("github")) is None:
            raise InputException(f"Source type {source_type} missing git: {doc}")
        return GitSource.parse_doc(git)
    if source_type == SOURCE_TYPE_HELM_REPO:
        if (helm_repo := doc.get("helmRepo")) is None:
            raise InputException(f"Source type {source_type} missing helmRepo: {doc}")
        return RepoSource.parse_doc(helm_repo)
    raise InputException(f"Unsupported source type '{source_type}': {doc}")


def _parse_metadata(doc: dict[str, Any]) -> dict[str, Any]:
    """Return keyword arguments for the StoredObject fields of a document."""
    if not (metadata := doc.get("metadata")):
        raise InputException(f"Invalid object missing metadata: {doc}")
    if not metadata.get("name"):
        raise InputException(f"Invalid object missing metadata.name: {doc}")
    kwargs: dict[str, Any] = {
        "name": metadata["name"],
        "namespace": metadata.get("namespace"),
        "labels": dict(metadata.get("labels") or {}),
        "annotations": dict(metadata.get("annotations") or {}),
        "finalizers": list(metadata.get("finalizers") or []),
    }
    if uid := metadata.get("uid"):
        kwargs["uid"] = uid
    return kwargs


@dataclass(kw_only=True)
class ReleaseRequest(StoredObject):
    """The desired state of a single Helm release."""

    kind: ClassVar[str] = HELM_RELEASE
    """The kind of the object."""

    name: str
    """The name of the request."""

    namespace: str | None = None
    """The namespace of the request and of the release."""

    source: ChartSource | None = None
    """Where the chart content is fetched from."""

    chart_name: str = ""
    """The name of the chart, also the name of its chart cache directory."""

    release_name: str = ""
    """The name of the release, defaults to the request name when empty."""

    values: str | None = None
    """Raw YAML text with values overriding the chart defaults."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ReleaseRequest":
        """Parse a ReleaseRequest from a raw document.

        Only structural problems fail parsing. Missing chart names or sources
        are reported when the request is reconciled.
        """
        if (kind := doc.get("kind")) != HELM_RELEASE:
            raise InputException(f"Invalid object expected {HELM_RELEASE}: {kind}")
        if not (api_version := doc.get("apiVersion")) or not api_version.startswith(
            API_DOMAIN
        ):
            raise InputException(f"Invalid object expected '{API_DOMAIN}': {doc}")
        spec = doc.get("spec") or {}
        for key in ("chartName", "releaseName", "values"):
            if (value := spec.get(key)) is not None and not isinstance(value, str):
                raise InputException(
                    f"Invalid object spec.{key} must be a string, got "
                    f"{type(value).__name__}: {doc}"
                )
        return cls(
            **_parse_metadata(doc),
            source=_parse_source(spec.get("source")),
            chart_name=spec.get("chartName") or "",
            release_name=spec.get("releaseName") or "",
            values=spec.get("values"),
        )

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def effective_release_name(self) -> str:
        """The release name to use, defaulted from the request name."""
        return self.release_name or self.name

    @property
    def installed_release_name(self) -> str | None:
        """The release name recorded after the first successful install."""
        return self.annotations.get(INSTALLED_RELEASE_ANNOTATION)

    @property
    def owner_labels(self) -> dict[str, str]:
        """Labels stamped on releases to correlate them with this request."""
        return {
            OWNER_NAME_LABEL: self.name,
            OWNER_NAMESPACE_LABEL: self.namespace or "",
        }

    def owner_reference(self) -> OwnerReference:
        """Return an owner reference pointing at this request."""
        return OwnerReference(kind=self.kind, name=self.name, uid=self.uid)


@dataclass(kw_only=True)
class ReleaseSecret(StoredObject):
    """Artifact describing an installed release, owned by its request."""

    kind: ClassVar[str] = SECRET_KIND
    """The kind of the object."""

    name: str
    """The name of the artifact, the same as the release name."""

    namespace: str | None = None
    """The namespace of the artifact."""

    string_data: dict[str, str] = field(default_factory=dict)
    """Details of the installed release."""
