"""
クエリパラメータ変換モジュール

QueryParamのリストを Spanner の paramTypes / params 形式へ変換する。
値の型解釈はせず、そのままJSONへ渡す。
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from .exceptions import QueryMarshalError


@dataclass
class QueryParam:
    """クエリパラメータ"""
    # SQL内で使うパラメータ名（@なし）
    name: str
    value: Any
    # spanner Type.code（例: INT64, STRING, ARRAY）
    type: str
    # ARRAY の場合の要素型
    array_element_type: str = ""


@dataclass
class MarshaledParams:
    """変換済みパラメータ"""
    param_types: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    # params をJSONエンコードした文字列
    encoded: str = "{}"


def param_type(type_code: str, array_element_type: str = "") -> Dict[str, Any]:
    """spanner Type 表現を作る"""
    result: Dict[str, Any] = {"code": type_code}
    if array_element_type:
        result["arrayElementType"] = {"code": array_element_type}
    return result


def marshal_params(params: Optional[Iterable[QueryParam]]) -> MarshaledParams:
    """
    パラメータを型マップと値マップに変換

    同名パラメータは後勝ち。

    Raises:
        QueryMarshalError: 値をJSONにできない場合（ネットワーク呼び出し前）
    """
    types: Dict[str, Dict[str, Any]] = {}
    values: Dict[str, Any] = {}
    for p in params or []:
        if not p.name:
            raise QueryMarshalError("parameter name must not be empty")
        types[p.name] = param_type(p.type, p.array_element_type)
        values[p.name] = p.value

    try:
        encoded = json.dumps(values, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise QueryMarshalError(
            f"unable to encode query params: {e}",
            param_name=_first_unencodable(values),
            original=e
        ) from e

    return MarshaledParams(param_types=types, params=values, encoded=encoded)


def _first_unencodable(values: Dict[str, Any]) -> Optional[str]:
    """JSONにできない最初のパラメータ名を探す（エラー詳細用）"""
    for name, value in values.items():
        try:
            json.dumps(value, allow_nan=False)
        except (TypeError, ValueError):
            return name
    return None
