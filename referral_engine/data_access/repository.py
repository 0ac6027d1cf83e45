import enum
import json
from typing import Dict, Any, List, Iterable, Tuple, Type

from psycopg2 import sql
from psycopg2._psycopg import connection
from psycopg2.extras import execute_values, RealDictCursor, Json

from referral_engine.data_access.models import BaseModel, DecimalEncoder
from referral_engine.data_access.operators import OperatorEq, OperatorInterface, OperatorIsNull
from referral_engine.utils import batch_iter

MAX_TRANSACTION_SIZE = 100


class OnConflict(enum.Enum):
    UPDATE = "update"
    IGNORE = "ignore"


class TableFilter:

    @staticmethod
    def _where_clause_statement(
            filter_by: Dict[str, Any]) -> Tuple[sql.SQL, Dict[str, Any]]:
        params = {}
        if not filter_by:
            return sql.SQL(""), params

        conditions = []
        for field, value in filter_by.items():
            if value is None:
                value = OperatorIsNull()
            elif not isinstance(value, OperatorInterface):
                value = OperatorEq(value)

            op_sql, op_params = value.to_sql(field)
            conditions.append(op_sql)
            params.update(op_params)

        condition = sql.SQL(" AND ").join(conditions)
        return sql.SQL(" WHERE ") + condition, params


class TableOrder:

    @staticmethod
    def _order_clause_statement(order_by: List[Tuple[str, str]]):
        if not order_by:
            return sql.SQL("")

        condition = sql.SQL(", ").join([
            sql.SQL("{field} {direction}").format(
                field=sql.Identifier(field), direction=sql.SQL(direction))
            for field, direction in order_by
        ])
        return sql.SQL(" ORDER BY ") + condition


class TableLoad(TableFilter, TableOrder):
    db_conn: connection

    def find_one(self,
                 cls: Type[BaseModel],
                 filter_by: Dict[str, Any] = None,
                 order_by: List[Tuple[str, str]] = None,
                 for_update: bool = False):
        query, params = self._get_query(cls, filter_by, order_by)
        query += sql.SQL(" LIMIT 1")
        if for_update:
            query += sql.SQL(" FOR UPDATE")

        with self.db_conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, params)

            row = cursor.fetchone()

        return cls().set_from_dict(row) if row else None

    def iterate_all(self,
                    cls: Type[BaseModel],
                    filter_by: Dict[str, Any] = None,
                    order_by: List[Tuple[str, str]] = None,
                    limit: int = None) -> Iterable[Any]:
        query, params = self._get_query(cls, filter_by, order_by)
        if limit:
            query += sql.SQL(" LIMIT {limit}").format(limit=sql.Literal(limit))

        with self.db_conn.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, params)

            for row in cursor:
                yield cls().set_from_dict(row)

    def find_all(self,
                 cls,
                 filter_by: Dict[str, Any] = None,
                 order_by: List[Tuple[str, str]] = None,
                 limit: int = None) -> List[Any]:
        return list(self.iterate_all(cls, filter_by, order_by, limit))

    def count(self, cls, filter_by: Dict[str, Any] = None) -> int:
        query = sql.SQL("SELECT count(*) FROM {}").format(
            sql.Identifier(cls.schema_name, cls.table_name))
        where_clause, params = self._where_clause_statement(filter_by)
        query += where_clause

        with self.db_conn.cursor() as cursor:
            cursor.execute(query, params)
            return cursor.fetchone()[0]

    def _get_query(self, cls, filter_by: Dict[str, Any],
                   order_by: List[Tuple[str, str]]):
        query = sql.SQL("SELECT * FROM {}").format(
            sql.Identifier(cls.schema_name, cls.table_name))

        params = {}
        if filter_by:
            where_clause, params = self._where_clause_statement(filter_by)
            query += where_clause
        if order_by:
            query += self._order_clause_statement(order_by)

        return query, params

    def refresh(self, entity: BaseModel):
        db_entity = self.find_one(
            entity.__class__,
            {field: getattr(entity, field)
             for field in entity.key_fields})

        if db_entity:
            entity.refresh_entity(db_entity)

        return entity


class TablePersist:
    db_conn: connection

    def commit(self):
        self.db_conn.commit()

    def rollback(self):
        self.db_conn.rollback()

    def persist(self, entities, on_conflict: OnConflict = OnConflict.UPDATE):
        """
        Insert or upsert entities, grouped per table.

        With `OnConflict.IGNORE` rows hitting a key conflict are left untouched
        and only the entities actually inserted are returned.
        """
        if isinstance(entities, BaseModel):
            entities = [entities]

        written = []
        for (schema_name, table_name,
             _), group_entities in self._group_entities(entities).items():
            if on_conflict == OnConflict.IGNORE:
                written += self._insert_ignore(schema_name, table_name,
                                               group_entities)
                continue

            for chunk in batch_iter(group_entities, MAX_TRANSACTION_SIZE):
                self._persist_chunk(schema_name, table_name, chunk)
            written += group_entities

        return written

    def _persist_chunk(self, schema_name, table_name, entities):
        field_names = self._get_field_names(entities[0])
        non_persistent_fields = entities[0].non_persistent_fields

        sql_string = self._get_insert_statement(schema_name, table_name,
                                                field_names, entities[0],
                                                OnConflict.UPDATE)

        values = [self._get_values(entity, field_names) for entity in entities]

        with self.db_conn.cursor() as cursor:
            returned = execute_values(cursor,
                                      sql_string,
                                      values,
                                      fetch=bool(non_persistent_fields))

        if not non_persistent_fields:
            return

        for entity, returned_row in zip(entities, returned):
            for non_persistent_field, value in zip(non_persistent_fields,
                                                   returned_row):
                setattr(entity, non_persistent_field, value)

    def _insert_ignore(self, schema_name, table_name,
                       entities) -> List[BaseModel]:
        field_names = self._get_field_names(entities[0])
        non_persistent_fields = entities[0].non_persistent_fields

        sql_string = self._get_insert_statement(schema_name, table_name,
                                                field_names, entities[0],
                                                OnConflict.IGNORE)

        inserted = []
        with self.db_conn.cursor() as cursor:
            for entity in entities:
                execute_values(cursor, sql_string,
                               [self._get_values(entity, field_names)])
                returned_row = cursor.fetchone()
                if returned_row is None:
                    continue

                for non_persistent_field, value in zip(
                        non_persistent_fields, returned_row):
                    setattr(entity, non_persistent_field, value)
                inserted.append(entity)

        return inserted

    @staticmethod
    def _get_field_names(entity: BaseModel) -> List[str]:
        # generated fields are only written back once they hold a value
        entity_dict = entity.to_dict()
        excluded = set(entity.db_excluded_fields) | {
            field_name
            for field_name in entity.non_persistent_fields
            if entity_dict.get(field_name) is None
        }
        return [
            field_name for field_name in entity_dict.keys()
            if field_name not in excluded
        ]

    @staticmethod
    def _get_values(entity: BaseModel, field_names: List[str]) -> List[Any]:
        entity_dict = entity.to_dict()
        values = []
        for field_name in field_names:
            value = entity_dict[field_name]
            if isinstance(value, enum.Enum):
                value = value.value
            elif isinstance(value, (dict, list)):
                value = Json(value,
                             dumps=lambda o: json.dumps(o, cls=DecimalEncoder))
            values.append(value)
        return values

    def _get_insert_statement(self, schema_name, table_name, field_names,
                              entity: BaseModel, on_conflict: OnConflict):
        field_names_escaped = self._escape_fields(field_names)

        sql_string = sql.SQL(
            "INSERT INTO {full_table_name} ({field_names}) VALUES %s").format(
                full_table_name=sql.Identifier(schema_name, table_name),
                field_names=field_names_escaped)

        key_fields = entity.key_fields
        update_fields = [
            field_name for field_name in field_names
            if field_name not in key_fields
        ]
        if on_conflict == OnConflict.IGNORE:
            sql_string = sql_string + sql.SQL(" ON CONFLICT DO NOTHING")
        elif key_fields and update_fields and set(key_fields) <= set(
                field_names):
            key_field_names_escaped = self._escape_fields(key_fields)

            sql_string = sql_string + sql.SQL(
                " ON CONFLICT({key_field_names}) DO UPDATE SET {set_clause}"
            ).format(key_field_names=key_field_names_escaped,
                     set_clause=sql.SQL(',').join([
                         sql.SQL("{field_name} = excluded.{field_name}").
                         format(field_name=sql.Identifier(field_name))
                         for field_name in update_fields
                     ]))

        returning_fields = entity.non_persistent_fields
        if on_conflict == OnConflict.IGNORE and not returning_fields:
            returning_fields = key_fields
        if returning_fields:
            sql_string = sql_string + sql.SQL(
                " RETURNING {returning_fields}").format(
                    returning_fields=self._escape_fields(returning_fields))
        return sql_string

    @staticmethod
    def _escape_fields(field_names):
        field_names_escaped = sql.SQL(',').join(
            map(sql.Identifier, field_names))
        return field_names_escaped

    def _group_entities(self, entities):
        entities_grouped = {}

        for entity in entities:
            key = (entity.schema_name, entity.table_name,
                   tuple(self._get_field_names(entity)))
            if key in entities_grouped:
                entities_grouped[key].append(entity)
            else:
                entities_grouped[key] = [entity]

        return entities_grouped


class Repository(TableLoad, TablePersist):

    def __init__(self, db_conn):
        self.db_conn = db_conn
