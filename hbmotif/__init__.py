try:
    from importlib.metadata import version, PackageNotFoundError

    __version__ = version(__name__)
    del version
except PackageNotFoundError:
    __version__ = "unknown"
