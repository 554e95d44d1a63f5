"""
bundled 库下载（`repl-host bundle`）。

说明：
- 只由显式的 bundle 命令调用；classpath resolver 遇到缺失的 bundle 只报错，不自动下载；
- 已存在的文件直接跳过；下载先写 `<name>.part`，完成后原子 rename，避免留下半个归档被 resolver 当成有效文件。
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import httpx

from repl_host.config.loader import ReplHostBundleConfig
from repl_host.core.errors import BundleDownloadError

logger = logging.getLogger(__name__)


@dataclass
class BundleReport:
    """一次 bundle 的结果（文件名列表）。"""

    lib_dir: Path
    downloaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"lib_dir": str(self.lib_dir), "downloaded": list(self.downloaded), "skipped": list(self.skipped)}


async def bundle_dependencies(
    lib_dir: Path,
    artifacts: Sequence[ReplHostBundleConfig.Artifact],
    *,
    timeout_sec: float = 60,
    client: Optional[httpx.AsyncClient] = None,
) -> BundleReport:
    """
    下载 bundled 归档到 `lib_dir`。

    参数：
    - lib_dir：目标目录（不存在时创建）
    - artifacts：归档清单（文件名 + URL）
    - timeout_sec：单次请求超时
    - client：可注入的 `httpx.AsyncClient`（测试用 `MockTransport`）；缺省时内部创建并关闭

    异常：
    - BundleDownloadError：任一归档下载失败（已下载成功的文件保留）
    """

    target = Path(lib_dir)
    target.mkdir(parents=True, exist_ok=True)
    report = BundleReport(lib_dir=target.resolve())

    owns_client = client is None
    http = client if client is not None else httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec), follow_redirects=True)
    try:
        for artifact in artifacts:
            dest = target / artifact.name
            if dest.exists():
                logger.info("%s already exists, skipping", artifact.name)
                report.skipped.append(artifact.name)
                continue
            await _download(http, artifact.url, dest)
            report.downloaded.append(artifact.name)
    finally:
        if owns_client:
            await http.aclose()

    logger.info(
        "Bundle complete in %s: %d downloaded, %d skipped",
        report.lib_dir,
        len(report.downloaded),
        len(report.skipped),
    )
    return report


async def _download(client: httpx.AsyncClient, url: str, dest: Path) -> None:
    part = dest.with_name(dest.name + ".part")
    logger.info("Downloading %s -> %s", url, dest.name)
    try:
        try:
            async with client.stream("GET", url) as resp:
                resp.raise_for_status()
                with part.open("wb") as fh:
                    async for chunk in resp.aiter_bytes():
                        fh.write(chunk)
        except httpx.HTTPStatusError as exc:
            raise BundleDownloadError(
                f"Failed to download {dest.name}: HTTP {exc.response.status_code}",
                details={"url": url},
            ) from exc
        except httpx.HTTPError as exc:
            raise BundleDownloadError(f"Failed to download {dest.name}: {exc}", details={"url": url}) from exc
        part.replace(dest)
    except BaseException:
        # 写盘失败、取消同样不留下 .part
        with contextlib.suppress(FileNotFoundError):
            part.unlink()
        raise
