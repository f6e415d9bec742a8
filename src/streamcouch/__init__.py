"""streamcouch - CouchDB change feed to MongoDB replication."""

__version__ = "0.1.0"
__author__ = "streamcouch Contributors"

from streamcouch.config import Settings, load_settings

__all__ = ["Settings", "load_settings", "__version__"]
