"""文档存储：以 bucket + key 定位 JSON 文档，本地目录实现。"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .errors import DocumentFormatError, DocumentNotFoundError
from .logging_utils import get_logger
from .paths import document_path

logger = get_logger(__name__)


class DocumentStore:
    """将 ``bucket/key`` 映射到 ``root/bucket/key`` 的 JSON 存储。"""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def path_for(self, bucket: str, key: str) -> Path:
        return document_path(self.root, bucket, key)

    def exists(self, bucket: str, key: str) -> bool:
        return self.path_for(bucket, key).exists()

    def download(self, bucket: str, key: str) -> Any:
        """读取并解析 JSON；文档不存在时抛 DocumentNotFoundError。"""

        path = self.path_for(bucket, key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise DocumentNotFoundError(f"{bucket}/{key} 不存在") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise DocumentFormatError(f"{bucket}/{key} 不是合法 JSON: {exc}") from exc

    def upload(self, bucket: str, key: str, payload: Any) -> Path:
        """原子写入：先写临时文件再替换。"""

        path = self.path_for(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(path)
        logger.debug("Uploaded %s/%s", bucket, key)
        return path
