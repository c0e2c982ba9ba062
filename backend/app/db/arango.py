from arango import ArangoClient
from backend.app.core.config import settings
import structlog
import sys

logger = structlog.get_logger(__name__)

DOC_COLLECTIONS = ["Conversations", "ArchiveMessages", "Connections", "FeatureFlags"]

# (collection, fields) persistent indexes backing the hot queries
INDEXES = [
    ("Conversations", ["user_id", "updated_at"]),
    ("ArchiveMessages", ["user_id", "timestamp"]),
    ("ArchiveMessages", ["conversation_id", "timestamp"]),
]

class ArangoDB:
    def __init__(self):
        self.client = ArangoClient(hosts=settings.ARANGO_HOST)
        self.db = None

    def initialize(self):
        try:
            sys_db = self.client.db('_system', username=settings.ARANGO_USERNAME, password=settings.ARANGO_PASSWORD)
            if not sys_db.has_database(settings.ARANGO_DB_NAME):
                sys_db.create_database(settings.ARANGO_DB_NAME)

            self.db = self.client.db(settings.ARANGO_DB_NAME, username=settings.ARANGO_USERNAME, password=settings.ARANGO_PASSWORD)

            for col in DOC_COLLECTIONS:
                if not self.db.has_collection(col):
                    self.db.create_collection(col)

            for col, fields in INDEXES:
                # idempotent: an identical index is returned, not duplicated
                self.db.collection(col).add_persistent_index(fields=fields)

            logger.info("arango_connected", database=settings.ARANGO_DB_NAME)
            return self.db
        except Exception as e:
            logger.error("arango_connect_failed", error=str(e))
            sys.exit(1)

    def get_db(self):
        if not self.db:
            self.initialize()
        return self.db

db = ArangoDB()
