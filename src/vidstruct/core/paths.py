"""文档存储的目录布局：``<storage_root>/<bucket>/<key>``。"""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath

from .errors import DocumentFormatError


STORAGE_ENV_KEY = "VIDSTRUCT_STORAGE_ROOT"


def resolve_storage_root(default: Path | None = None) -> Path:
    """确定存放各 bucket 文档的根目录。

    顺序：``VIDSTRUCT_STORAGE_ROOT`` > ``default`` > 仓库根目录下的 ``storage/``。
    """

    env_value = os.getenv(STORAGE_ENV_KEY)
    if env_value:
        return Path(env_value).expanduser().resolve()
    if default is not None:
        return default.expanduser().resolve()
    return Path(__file__).resolve().parents[3] / "storage"


def document_path(root: Path, bucket: str, key: str) -> Path:
    """把 bucket + key 映射为本地路径；key 使用 ``/`` 分隔且不能跳出 bucket 目录。"""

    parts = PurePosixPath(key).parts
    if not bucket or "/" in bucket or bucket in (".", ".."):
        raise DocumentFormatError(f"非法 bucket: {bucket!r}")
    if not parts or PurePosixPath(key).is_absolute() or ".." in parts:
        raise DocumentFormatError(f"非法 key: {key!r}")
    return root.joinpath(bucket, *parts)
