from abc import abstractmethod
from typing import Dict, Any, Tuple

from psycopg2 import sql


class OperatorInterface:

    @abstractmethod
    def to_sql(self, field_name: str) -> Tuple[sql.Composable, Dict[str, Any]]:
        pass


class ComparisonOperator(OperatorInterface):

    def __init__(self, op, param):
        self.op = op
        self.param = param

    def to_sql(self, field_name: str) -> Tuple[sql.Composable, Dict[str, Any]]:
        param_name = f"{field_name}_{self.op_name}"
        _sql = sql.SQL(f"{{field_name}} {self.op} %({param_name})s").format(
            field_name=sql.Identifier(field_name))
        _params = {param_name: self.param}

        return _sql, _params

    @property
    def op_name(self) -> str:
        return self.__class__.__name__.lower().replace("operator", "")

    def __eq__(self, other):
        return type(self) is type(other) and self.param == other.param

    def __repr__(self):
        return f"{self.__class__.__name__}({self.param!r})"


class OperatorEq(ComparisonOperator):

    def __init__(self, param):
        super().__init__("=", param)


class OperatorLt(ComparisonOperator):

    def __init__(self, param):
        super().__init__("<", param)


class OperatorGte(ComparisonOperator):

    def __init__(self, param):
        super().__init__(">=", param)


class OperatorIsNull(OperatorInterface):

    def to_sql(self, field_name: str) -> Tuple[sql.Composable, Dict[str, Any]]:
        _sql = sql.SQL("{field_name} IS NULL").format(
            field_name=sql.Identifier(field_name))
        return _sql, {}

    def __eq__(self, other):
        return isinstance(other, OperatorIsNull)


class OperatorIn(OperatorInterface):

    def __init__(self, param):
        self.param = list(param)

    def to_sql(self, field_name: str) -> Tuple[sql.Composable, Dict[str, Any]]:
        param_name = f"{field_name}_in"
        _sql = sql.SQL(f"{{field_name}} = ANY (%({param_name})s)").format(
            field_name=sql.Identifier(field_name))
        _params = {param_name: self.param}

        return _sql, _params

    def __eq__(self, other):
        return isinstance(other, OperatorIn) and self.param == other.param

    def __repr__(self):
        return f"OperatorIn({self.param!r})"
