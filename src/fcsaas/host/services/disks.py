"""
Per-tenant storage.

Each tenant gets a data directory holding a private copy of the base root
filesystem, a sparse ext4 data volume sized by tier and the Firecracker
log. Secrets are written into the data volume itself as ``config/.env``
so the guest reads them from its own disk.
"""

import asyncio
import os
import shutil
from dataclasses import dataclass

from fcsaas.exceptions import StorageError
from fcsaas.firecracker import naming
from fcsaas.utils.logger import get_logger

logger = get_logger(__name__)

# Suffix of a disk image still being built
PARTIAL_SUFFIX = ".partial"


@dataclass
class TenantPaths:
    data_dir: str
    rootfs: str
    data_volume: str
    mount_dir: str
    log_file: str

    @classmethod
    def for_dir(cls, data_dir: str) -> "TenantPaths":
        return cls(
            data_dir=data_dir,
            rootfs=naming.rootfs_path(data_dir),
            data_volume=naming.data_volume_path(data_dir),
            mount_dir=naming.mount_dir_path(data_dir),
            log_file=naming.log_path(data_dir),
        )


def render_env(env_vars: dict[str, str]) -> str:
    """
    Render secrets as ``KEY="value"`` lines, sorted by key.

    Backslashes, double quotes, ``$`` and backticks are escaped so a
    shell-style ``.env`` reader gets the value back unchanged.

    Raises:
        ValueError: If a value contains a line break or NUL.
    """
    lines = []
    for key in sorted(env_vars):
        value = env_vars[key]
        if any(c in value for c in "\r\n\0"):
            raise ValueError(f"value of {key} contains a line break or NUL")
        for char in ("\\", '"', "$", "`"):
            value = value.replace(char, "\\" + char)
        lines.append(f'{key}="{value}"\n')
    return "".join(lines)


class TenantStorage:
    """Creates and removes tenant data directories."""

    def __init__(
        self,
        base_dir: str,
        rootfs_image: str,
        mkfs_binary: str = "mkfs.ext4",
        mount_binary: str = "mount",
        umount_binary: str = "umount",
        env_owner: tuple[int, int] | None = (1000, 1000),
    ):
        self.base_dir = base_dir
        self.rootfs_image = rootfs_image
        self.mkfs_binary = mkfs_binary
        self.mount_binary = mount_binary
        self.umount_binary = umount_binary
        self.env_owner = env_owner

    def paths_for(self, tenant_id: str) -> TenantPaths:
        return TenantPaths.for_dir(naming.tenant_data_dir(self.base_dir, tenant_id))

    async def prepare(
        self, tenant_id: str, disk_mib: int, env_vars: dict[str, str]
    ) -> TenantPaths:
        """
        Create the tenant data dir with its disks and write its secrets.

        Existing disks are kept so a retried start does not wipe tenant
        data. A disk only appears under its final name once it is complete,
        so a failed attempt is rebuilt from scratch on the next call.

        Raises:
            StorageError: If a disk cannot be created or written.
        """
        paths = self.paths_for(tenant_id)
        await asyncio.to_thread(os.makedirs, paths.data_dir, 0o700, True)

        if not os.path.exists(paths.rootfs):
            await self._build(paths.rootfs, self._copy_rootfs)
        if not os.path.exists(paths.data_volume):
            await self._build(
                paths.data_volume, lambda target: self._create_data_volume(target, disk_mib)
            )
        await self.write_env(paths, env_vars)

        logger.info(f"Storage ready for {tenant_id}: {paths.data_dir} ({disk_mib} MiB data)")
        return paths

    async def _build(self, target: str, builder) -> None:
        partial = target + PARTIAL_SUFFIX
        try:
            await builder(partial)
            await asyncio.to_thread(os.replace, partial, target)
        finally:
            if os.path.exists(partial):
                await asyncio.to_thread(os.unlink, partial)

    async def _run(self, *cmd: str) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise StorageError(f"Cannot run {cmd[0]}: {e}")
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise StorageError(
                f"{cmd[0]} failed ({proc.returncode}): {stderr.decode(errors='replace').strip()}"
            )

    async def _copy_rootfs(self, target: str) -> None:
        if not os.path.exists(self.rootfs_image):
            raise StorageError(f"Base rootfs not found: {self.rootfs_image}")
        await self._run("cp", "--sparse=always", "--reflink=auto", self.rootfs_image, target)

    async def _create_data_volume(self, target: str, disk_mib: int) -> None:
        def _allocate():
            with open(target, "wb") as f:
                f.truncate(disk_mib * 1024 * 1024)

        await asyncio.to_thread(_allocate)
        await self._run(self.mkfs_binary, "-q", "-F", "-L", "data", target)

    # =========================================================================
    # Secrets
    # =========================================================================

    async def write_env(self, paths: TenantPaths, env_vars: dict[str, str]) -> None:
        """
        Write ``config/.env`` inside the data volume.

        The volume is loop-mounted on ``mount_dir`` for the write and always
        unmounted afterwards. Must only run while no guest has the volume
        attached.

        Raises:
            StorageError: If the volume cannot be mounted or written.
        """
        try:
            content = render_env(env_vars)
        except ValueError as e:
            raise StorageError(f"Cannot write environment: {e}")

        await asyncio.to_thread(os.makedirs, paths.mount_dir, 0o700, True)
        try:
            await self._run(self.mount_binary, "-o", "loop", paths.data_volume, paths.mount_dir)
            try:
                await asyncio.to_thread(self._write_env_file, paths.mount_dir, content)
            except OSError as e:
                raise StorageError(f"Cannot write environment into {paths.data_volume}: {e}")
            finally:
                await self._run(self.umount_binary, paths.mount_dir)
        finally:
            if not os.path.ismount(paths.mount_dir):
                await asyncio.to_thread(os.rmdir, paths.mount_dir)
        logger.debug(f"Wrote {len(env_vars)} environment keys into {paths.data_volume}")

    def _write_env_file(self, mount_dir: str, content: str) -> None:
        config_dir = os.path.join(mount_dir, naming.GUEST_CONFIG_DIR)
        os.makedirs(config_dir, 0o700, exist_ok=True)
        env_file = os.path.join(config_dir, naming.GUEST_ENV_FILE)
        fd = os.open(env_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(env_file, 0o600)
        if self.env_owner is not None:
            uid, gid = self.env_owner
            for path in (config_dir, env_file):
                os.chown(path, uid, gid)

    async def remove(self, tenant_id: str) -> None:
        """Delete the tenant data dir; no-op when absent."""
        data_dir = self.paths_for(tenant_id).data_dir
        if not os.path.exists(data_dir):
            return
        await asyncio.to_thread(shutil.rmtree, data_dir)
        logger.debug(f"Removed data dir {data_dir}")
