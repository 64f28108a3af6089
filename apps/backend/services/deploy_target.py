"""Publish/deploy target: generations on local disk with a `current` pointer per site."""
from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
from typing import Callable, Protocol

import httpx

from apps.backend.config import get_settings
from apps.backend.services.errors import OperationCancelled, TransientDependencyError, ValidationError

logger = logging.getLogger(__name__)

StopCheck = Callable[[], bool]


class DeployTarget(Protocol):
    def upload_assets(self, run_id: int, files: dict[str, bytes], should_stop: StopCheck | None = None) -> dict: ...

    def build(self, run_id: int, should_stop: StopCheck | None = None) -> dict: ...

    def deploy(self, run_id: int) -> str: ...

    def health_check(self, url: str, expect: str | None = None) -> bool: ...

    def promote(self, site: str, run_id: int) -> str: ...

    def discard(self, run_id: int) -> None: ...


def _never() -> bool:
    return False


def _safe_rel_path(name: str) -> str:
    rel = os.path.normpath(name).lstrip("/")
    if rel.startswith("..") or os.path.isabs(rel) or not rel or rel == ".":
        raise ValidationError(f"bad_asset_path: {name}")
    return rel


class LocalDeployTarget:
    """
    <root>/runs/<run_id>/staging  - uploaded assets
    <root>/runs/<run_id>/build    - built generation (immutable after build)
    <root>/sites/<slug>/current   - run id being served
    """

    def __init__(self, root: str | None = None, public_base_url: str | None = None, http_timeout: float = 10.0) -> None:
        s = get_settings()
        self.root = (root or s.portal_storage_path or "/app/storage/portals").rstrip("/")
        base = public_base_url if public_base_url is not None else s.portal_public_base_url
        self.public_base_url = (base or "").rstrip("/") or None
        self.http_timeout = http_timeout

    def _run_dir(self, run_id: int) -> str:
        return os.path.join(self.root, "runs", str(int(run_id)))

    def _site_dir(self, site: str) -> str:
        return os.path.join(self.root, "sites", _safe_rel_path(site))

    def upload_assets(self, run_id: int, files: dict[str, bytes], should_stop: StopCheck | None = None) -> dict:
        should_stop = should_stop or _never
        staging = os.path.join(self._run_dir(run_id), "staging")
        os.makedirs(staging, exist_ok=True)
        count = 0
        size = 0
        for name in sorted(files):
            if should_stop():
                raise OperationCancelled("upload_cancelled")
            dst = os.path.join(staging, _safe_rel_path(name))
            os.makedirs(os.path.dirname(dst), exist_ok=True)
            data = files[name]
            try:
                with open(dst, "wb") as f:
                    f.write(data)
            except OSError as e:
                raise TransientDependencyError(f"asset_write_failed: {e}") from e
            count += 1
            size += len(data)
        logger.info("deploy_assets_uploaded run_id=%s files=%s bytes=%s", run_id, count, size)
        return {"assets": count, "bytes": size}

    def build(self, run_id: int, should_stop: StopCheck | None = None) -> dict:
        should_stop = should_stop or _never
        run_dir = self._run_dir(run_id)
        staging = os.path.join(run_dir, "staging")
        build_dir = os.path.join(run_dir, "build")
        if not os.path.isfile(os.path.join(staging, "index.html")):
            raise ValidationError("build_missing_index")
        if os.path.isdir(build_dir):
            shutil.rmtree(build_dir)
        os.makedirs(build_dir, exist_ok=True)
        manifest: dict[str, str] = {}
        for dirpath, _dirs, names in os.walk(staging):
            for name in sorted(names):
                if should_stop():
                    raise OperationCancelled("build_cancelled")
                src = os.path.join(dirpath, name)
                rel = os.path.relpath(src, staging)
                dst = os.path.join(build_dir, rel)
                os.makedirs(os.path.dirname(dst), exist_ok=True)
                h = hashlib.sha256()
                with open(src, "rb") as fin, open(dst, "wb") as fout:
                    while True:
                        chunk = fin.read(1024 * 1024)
                        if not chunk:
                            break
                        fout.write(chunk)
                        h.update(chunk)
                manifest[rel] = h.hexdigest()
        if should_stop():
            raise OperationCancelled("build_cancelled")
        with open(os.path.join(build_dir, "manifest.json"), "w", encoding="utf-8") as f:
            json.dump(manifest, f, sort_keys=True)
        logger.info("deploy_build_done run_id=%s files=%s", run_id, len(manifest))
        return {"built_files": len(manifest)}

    def deploy(self, run_id: int) -> str:
        """Make the built generation addressable; returns its preview url."""
        build_dir = os.path.join(self._run_dir(run_id), "build")
        if not os.path.isdir(build_dir):
            raise ValidationError("deploy_missing_build")
        return f"file://{build_dir}"

    def _resolve_file_url(self, url: str) -> str:
        path = url[len("file://"):]
        if os.path.isdir(path):
            pointer = os.path.join(path, "current")
            if os.path.isfile(pointer):
                with open(pointer, "r", encoding="utf-8") as f:
                    run_id = int(f.read().strip())
                path = os.path.join(self._run_dir(run_id), "build")
            path = os.path.join(path, "index.html")
        return path

    def health_check(self, url: str, expect: str | None = None) -> bool:
        if url.startswith("file://"):
            try:
                with open(self._resolve_file_url(url), "r", encoding="utf-8") as f:
                    body = f.read()
            except (OSError, ValueError):
                logger.warning("deploy_health_check_unreadable url=%s", url)
                return False
            return not expect or expect in body
        try:
            r = httpx.get(url, timeout=self.http_timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.warning("deploy_health_check_error url=%s error=%s", url, str(e)[:200])
            return False
        if r.status_code // 100 != 2:
            logger.warning("deploy_health_check_status url=%s status=%s", url, r.status_code)
            return False
        return not expect or expect in r.text

    def promote(self, site: str, run_id: int) -> str:
        """Atomic switch of the site's `current` pointer to run_id."""
        site_dir = self._site_dir(site)
        os.makedirs(site_dir, exist_ok=True)
        tmp = os.path.join(site_dir, f".current.{int(run_id)}")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(str(int(run_id)))
        os.replace(tmp, os.path.join(site_dir, "current"))
        logger.info("deploy_promoted site=%s run_id=%s", site, run_id)
        return self.site_url(site)

    def site_url(self, site: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{site}/"
        return f"file://{self._site_dir(site)}"

    def current_run(self, site: str) -> int | None:
        pointer = os.path.join(self._site_dir(site), "current")
        try:
            with open(pointer, "r", encoding="utf-8") as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def discard(self, run_id: int) -> None:
        shutil.rmtree(self._run_dir(run_id), ignore_errors=True)


def get_deploy_target() -> DeployTarget:
    return LocalDeployTarget()
