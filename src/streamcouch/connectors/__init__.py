"""Source and destination connectors for streamcouch."""

from streamcouch.connectors.couchdb import CouchChangeFeed, create_change_feed
from streamcouch.connectors.mongodb import MongoApplier, create_applier

__all__ = ["CouchChangeFeed", "create_change_feed", "MongoApplier", "create_applier"]
