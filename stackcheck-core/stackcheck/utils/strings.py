import uuid
from typing import Union

DEFAULT_ENCODING = "utf-8"


def to_str(obj: Union[str, bytes], encoding: str = DEFAULT_ENCODING, errors="strict") -> str:
    """If ``obj`` is an instance of ``binary_type``, return
    ``obj.decode(encoding, errors)``, otherwise return ``obj``"""
    return obj.decode(encoding, errors) if isinstance(obj, bytes) else obj


def short_uid() -> str:
    return str(uuid.uuid4())[0:8]
