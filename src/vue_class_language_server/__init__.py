try:
    from ._version import __version__
except ImportError:
    from importlib.metadata import version, PackageNotFoundError

    try:
        __version__ = version("vue-class-language-server")
    except PackageNotFoundError:
        __version__ = "unknown"
