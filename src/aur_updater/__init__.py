"""
AUR Updater - keep locally installed AUR packages up to date.

Finds newer upstream definitions, fetches them together with their source
assets through configurable mirrors, then builds and installs.
"""

__version__ = "1.0.0"


def __getattr__(name: str):
    """Lazy import for heavy dependencies."""
    if name == "PackageUpdater":
        from aur_updater.core.updater import PackageUpdater

        return PackageUpdater
    if name == "AssetFetcher":
        from aur_updater.core.fetcher import AssetFetcher

        return AssetFetcher
    if name == "MetadataRecord":
        from aur_updater.models.package import MetadataRecord

        return MetadataRecord
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["PackageUpdater", "AssetFetcher", "MetadataRecord", "__version__"]
