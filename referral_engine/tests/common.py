import os

from referral_engine.context_container import ContextContainer

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "..", "..", "sql",
                           "schema.sql")


class TestContextContainer(ContextContainer):
    """
    Runs everything in one transaction that is rolled back on exit, so tests
    can create the schema and seed rows without leaving anything behind.
    Services that commit on their own must not be used with it.
    """
    __test__ = False

    def apply_schema(self, schema_path: str = SCHEMA_PATH):
        with open(schema_path) as f:
            schema = f.read()

        with self.db_conn.cursor() as cursor:
            cursor.execute(schema)

    def __exit__(self, exc_type, exc_value, traceback):
        if self._db_conn:
            self._db_conn.rollback()
            self._db_conn.close()
