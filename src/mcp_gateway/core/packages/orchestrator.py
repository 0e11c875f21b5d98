"""
Package lifecycle orchestration.

Installs, upgrades and uninstalls the npm and Python packages backing
stdio servers, one install directory per server under
``<packages_dir>/<runtime>/<server>``, and registers the resulting
servers with the connection registry.
"""

import json
import os
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from mcp_gateway.core.base import KeyedLocks, Resource
from mcp_gateway.core.exceptions import (
    ConflictError,
    GatewayError,
    InstallFailedError,
    NotFoundError,
    UpgradeFailedError,
    ValidationError,
)
from mcp_gateway.core.models import (
    SERVER_NAME_PATTERN,
    AddServerRequest,
    InstallPackageRequest,
    PackageRecord,
    PackageStatus,
    Runtime,
    ServerRecord,
    TransportType,
    UpdateInfo,
    UpdateServerRequest,
    UpgradeAllResult,
    UpgradeResult,
)
from mcp_gateway.core.packages.runner import CommandResult, CommandRunner
from mcp_gateway.core.registry import ConnectionRegistry, merge_path, validate_transport
from mcp_gateway.core.store import DocumentStore
from mcp_gateway.core.versions import UNKNOWN_VERSION, VersionOracle, compare_versions
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

NPM_NAME_PATTERN = re.compile(r"^[@a-z0-9\-_/.]+$")
PYTHON_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-]*$")
PYTHON_MODULE_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.+\-]*$")

NPM_INFO_PREFIXES = ("npm notice",)
NPM_WARN_PREFIXES = ("npm warn",)


def validate_package_name(name: str, runtime: Runtime) -> None:
    """Raise ``ValidationError`` for a malformed package name."""
    pattern = PYTHON_NAME_PATTERN if runtime == Runtime.PYTHON else NPM_NAME_PATTERN
    if not name or not pattern.match(name):
        raise ValidationError(
            f"Invalid {runtime.value} package name: {name!r}",
            details={"package": name, "runtime": runtime.value},
        )


def validate_version(version: Optional[str]) -> None:
    if version is not None and not VERSION_PATTERN.match(version):
        raise ValidationError(f"Invalid version: {version!r}", details={"version": version})


def npm_output_problems(result: CommandResult, fail_on_warning: bool = False) -> List[str]:
    """Stderr lines that make an npm command count as failed."""
    problems = []
    for line in result.stderr.splitlines():
        text = line.strip()
        lowered = text.lower()
        if not text or lowered.startswith(NPM_INFO_PREFIXES):
            continue
        if lowered.startswith(NPM_WARN_PREFIXES) and not fail_on_warning:
            continue
        problems.append(text)
    if not result.ok and not problems:
        problems.append(f"exit status {result.returncode}")
    return problems


def parse_pip_show_version(output: str) -> Optional[str]:
    for line in output.splitlines():
        if line.startswith("Version:"):
            return line.split(":", 1)[1].strip() or None
    return None


def venv_bin_dir(venv: Path) -> Path:
    return venv / ("Scripts" if os.name == "nt" else "bin")


def venv_python(venv: Path) -> Path:
    return venv_bin_dir(venv) / ("python.exe" if os.name == "nt" else "python")


class PackageOrchestrator(Resource):
    """Install/upgrade/uninstall of packages and their servers."""

    def __init__(
        self,
        store: DocumentStore,
        registry: ConnectionRegistry,
        oracle: VersionOracle,
        runner: Optional[CommandRunner] = None,
        packages_dir: Path = Path("./packages"),
        npm_executable: str = "npm",
        python_executable: str = "python3",
        fail_on_warning: bool = False,
    ):
        self.store = store
        self.registry = registry
        self.oracle = oracle
        self.runner = runner or CommandRunner()
        self.packages_dir = Path(packages_dir)
        self.npm_executable = npm_executable
        self.python_executable = python_executable
        self.fail_on_warning = fail_on_warning
        self._packages: Dict[str, PackageRecord] = {}
        self._locks = KeyedLocks()

    async def init(self) -> None:
        """Load package records; interrupted installs and upgrades become errors."""
        await self.store.init()
        for document in self.store.find():
            try:
                package = PackageRecord.model_validate(document)
            except Exception as e:
                logger.error(f"Skipping invalid package record {document.get('server_name')}: {e}")
                continue
            if package.status in (PackageStatus.INSTALLING, PackageStatus.UPGRADING):
                package.error = f"Interrupted during {package.status.value}"
                package.status = PackageStatus.ERROR
                logger.warning(f"Package for server '{package.server_name}': {package.error}")
                self._persist(package)
            self._packages[package.server_name] = package
        logger.info(f"Loaded {len(self._packages)} package record(s)")

    async def stop(self) -> None:
        await self.store.stop()

    def _persist(self, package: PackageRecord) -> None:
        try:
            self.store.upsert(package.to_document(), {"server_name": package.server_name})
        except Exception as e:
            logger.error(f"Failed to persist package for server '{package.server_name}': {e}")

    def _require(self, server_name: str) -> PackageRecord:
        package = self._packages.get(server_name)
        if package is None:
            raise NotFoundError(
                f"No package installed for server '{server_name}'",
                details={"server": server_name},
            )
        return package

    def has_package(self, server_name: str) -> bool:
        return server_name in self._packages

    def get(self, server_name: str) -> PackageRecord:
        return self._require(server_name).model_copy(deep=True)

    def list(self) -> List[PackageRecord]:
        return [package.model_copy(deep=True) for package in self._packages.values()]

    def install_dir(self, runtime: Runtime, server_name: str) -> Path:
        return self.packages_dir / runtime.value / server_name

    def sync_enabled(self, server_name: str, enabled: bool) -> None:
        """Mirror an operator enable/disable of the owning server."""
        package = self._packages.get(server_name)
        if package is None or package.enabled == enabled:
            return
        package.enabled = enabled
        self._persist(package)

    # Install

    def _validate_install(self, request: InstallPackageRequest) -> None:
        if not SERVER_NAME_PATTERN.match(request.server_name or ""):
            raise ValidationError(f"Invalid server name: {request.server_name!r}")
        validate_package_name(request.name, request.runtime)
        validate_version(request.version)

        if request.runtime == Runtime.PYTHON:
            if not request.python_module:
                raise ValidationError("python_module is required for python runtime")
            if not PYTHON_MODULE_PATTERN.match(request.python_module):
                raise ValidationError(f"Invalid python_module: {request.python_module!r}")
            if request.command:
                raise ValidationError("command cannot be set for python runtime")
        elif request.python_module or request.python_args:
            raise ValidationError("python_module and python_args apply to python runtime only")

        if request.command:
            validate_transport(TransportType.STDIO, request.command, request.args, request.env)

    async def _clear_name(self, server_name: str) -> None:
        existing_package = self._packages.get(server_name)
        if existing_package is not None and existing_package.status != PackageStatus.ERROR:
            raise ConflictError(
                f"Package already installed for server '{server_name}'",
                details={"server": server_name},
            )
        if not self.registry.has(server_name):
            return
        server = self.registry.get(server_name)
        if existing_package is None and not server.enabled and not server.is_copy:
            logger.warning(f"Removing disabled server '{server_name}' with no package before reinstalling")
            await self.registry.delete(server_name)
            return
        raise ConflictError(f"Server '{server_name}' already exists", details={"server": server_name})

    async def install(self, request: InstallPackageRequest) -> PackageRecord:
        """
        Install a package and register its server.

        Validation happens before any filesystem or subprocess work. The
        server only appears after the install and version read succeed.

        Raises:
            ValidationError: Invalid name, version or runtime fields
            ConflictError: The server name is taken
            InstallFailedError: Any install step failed
        """
        self._validate_install(request)
        server_name = request.server_name

        async with self._locks(server_name):
            await self._clear_name(server_name)

            package = PackageRecord(
                server_name=server_name,
                name=request.name,
                version="",
                install_path=str(self.install_dir(request.runtime, server_name)),
                runtime=request.runtime,
                python_module=request.python_module,
                python_args=request.python_args,
                status=PackageStatus.INSTALLING,
                enabled=request.enabled,
            )
            self._packages[server_name] = package
            self._persist(package)
            logger.info(f"Installing {request.runtime.value} package {request.name} for '{server_name}'")

            try:
                if request.runtime == Runtime.PYTHON:
                    command, args, env, version = await self._install_python(package, request)
                else:
                    command, args, env, version = await self._install_node(package, request)

                await self.registry.add(AddServerRequest(
                    name=server_name,
                    transport_type=TransportType.STDIO,
                    command=command,
                    args=args,
                    env=env,
                    secret_names=request.secret_names,
                    startup_timeout=request.startup_timeout,
                    enabled=request.enabled,
                ))
            except Exception as e:
                package.status = PackageStatus.ERROR
                package.error = e.message if isinstance(e, GatewayError) else str(e)
                self._persist(package)
                logger.error(f"Failed to install {request.name} for '{server_name}': {package.error}")
                if isinstance(e, InstallFailedError):
                    raise
                raise InstallFailedError(
                    f"Failed to install {request.name}: {package.error}",
                    details={"server": server_name, "package": request.name, "cause": str(e)},
                ) from e

            package.version = version
            package.status = PackageStatus.INSTALLED
            package.error = None
            self._persist(package)
            logger.info(f"Installed {request.name}@{version} for '{server_name}'")
            return package.model_copy(deep=True)

    async def _install_node(
        self, package: PackageRecord, request: InstallPackageRequest
    ) -> Tuple[str, List[str], Dict[str, str], str]:
        path = Path(package.install_path)
        path.mkdir(parents=True, exist_ok=True)

        init = await self.runner.run([self.npm_executable, "init", "-y"], cwd=path)
        if not init.ok:
            raise InstallFailedError(f"npm init failed: {init.stderr.strip()}")

        spec = f"{package.name}@{request.version}" if request.version else package.name
        result = await self.runner.run([self.npm_executable, "install", spec], cwd=path)
        problems = npm_output_problems(result, self.fail_on_warning or request.fail_on_warning)
        if problems:
            raise InstallFailedError(f"Error installing package: {'; '.join(problems)}")

        manifest = self._node_manifest(path, package.name)
        version = self._node_version(manifest, package.name)
        args = list(request.args or [])
        command = request.command
        if not command:
            command = "node"
            args = [self._node_entry(path, package.name, manifest), *args]
        return command, args, dict(request.env or {}), version

    @staticmethod
    def _node_manifest(path: Path, name: str) -> Optional[Dict[str, Any]]:
        manifest_path = path / "node_modules" / name / "package.json"
        if not manifest_path.exists():
            return None
        with open(manifest_path, "r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _node_version(manifest: Optional[Dict[str, Any]], name: str) -> str:
        version = (manifest or {}).get("version")
        if not version:
            raise InstallFailedError(f"Could not read installed version of {name}")
        return version

    @staticmethod
    def _node_entry(path: Path, name: str, manifest: Optional[Dict[str, Any]]) -> str:
        """Launch script: ``bin`` (string or first entry), then ``main``, then the package dir."""
        package_dir = path / "node_modules" / name
        manifest = manifest or {}
        bin_field = manifest.get("bin")
        if isinstance(bin_field, str) and bin_field:
            return str(package_dir / bin_field)
        if isinstance(bin_field, dict) and bin_field:
            return str(package_dir / next(iter(bin_field.values())))
        if manifest.get("main"):
            return str(package_dir / manifest["main"])
        return str(package_dir)

    async def _install_python(
        self, package: PackageRecord, request: InstallPackageRequest
    ) -> Tuple[str, List[str], Dict[str, str], str]:
        venv = Path(package.install_path)
        interpreter = venv_python(venv)
        if not interpreter.exists():
            venv.parent.mkdir(parents=True, exist_ok=True)
            result = await self.runner.run([self.python_executable, "-m", "venv", str(venv)])
            if not result.ok:
                raise InstallFailedError(f"Failed to create virtualenv: {result.stderr.strip()}")

        spec = self._pip_spec(package.name, request.version)
        result = await self.runner.run([str(interpreter), "-m", "pip", "install", spec])
        if not result.ok:
            raise InstallFailedError(f"pip install failed: {result.stderr.strip()}")

        version = await self._pip_version(interpreter, package.name)
        caller_env = dict(request.env or {})
        env = {"PYTHONUNBUFFERED": "1", "VIRTUAL_ENV": str(venv.resolve()), **caller_env}
        env["PATH"] = merge_path(str(venv_bin_dir(venv).resolve()), caller_env.get("PATH"))
        args = ["-u", "-m", request.python_module, *request.python_args]
        return str(interpreter), args, env, version

    @staticmethod
    def _pip_spec(name: str, version: Optional[str]) -> str:
        if version and version != "latest":
            return f"{name}=={version}"
        return name

    async def _pip_version(self, interpreter: Path, name: str) -> str:
        result = await self.runner.run([str(interpreter), "-m", "pip", "show", name])
        version = parse_pip_show_version(result.stdout) if result.ok else None
        if not version:
            raise InstallFailedError(f"Could not read installed version of {name}")
        return version

    # Upgrade

    async def upgrade(self, server_name: str, version: Optional[str] = None) -> UpgradeResult:
        """
        Upgrade a package in place.

        The server is disabled for the duration and re-enabled afterwards
        if it was enabled, whatever the outcome.

        Raises:
            NotFoundError: No package for the server
            UpgradeFailedError: The package never finished installing, or the
                upgrade failed; the recorded version is unchanged
        """
        package = self._require(server_name)
        validate_version(version)
        async with self._locks(server_name):
            if not self._upgradable(package):
                raise UpgradeFailedError(
                    f"Package {package.name} for server '{server_name}' was never installed; reinstall it",
                    details={"server": server_name, "package": package.name, "status": package.status.value},
                )
            return await self._upgrade(package, version)

    def _upgradable(self, package: PackageRecord) -> bool:
        """Only packages whose install completed, and whose server exists, can be upgraded."""
        return bool(package.version) and self.registry.has(package.server_name)

    async def _upgrade(self, package: PackageRecord, version: Optional[str]) -> UpgradeResult:
        server_name = package.server_name
        package.status = PackageStatus.UPGRADING
        package.error = None
        self._persist(package)

        was_enabled = self.registry.has(server_name) and self.registry.get(server_name).enabled
        logger.info(f"Upgrading {package.name} for '{server_name}' to {version or 'latest'}")
        try:
            if was_enabled:
                await self.registry.disable(server_name)
            if package.runtime == Runtime.PYTHON:
                new_version = await self._upgrade_python(package, version)
            else:
                new_version = await self._upgrade_node(package, version)
        except Exception as e:
            package.status = PackageStatus.ERROR
            package.error = e.message if isinstance(e, GatewayError) else str(e)
            self._persist(package)
            logger.error(f"Failed to upgrade {package.name} for '{server_name}': {package.error}")
            await self._restore(server_name, was_enabled)
            raise UpgradeFailedError(
                f"Failed to upgrade {package.name}: {package.error}",
                details={"server": server_name, "package": package.name, "cause": str(e)},
            ) from e

        package.version = new_version
        package.status = PackageStatus.INSTALLED
        package.last_upgraded = datetime.now()
        package.update_available = False
        self._persist(package)
        logger.info(f"Upgraded {package.name} for '{server_name}' to {new_version}")

        server = await self._restore(server_name, was_enabled)
        return UpgradeResult(
            server_name=server_name,
            success=True,
            package=package.model_copy(deep=True),
            server=server,
        )

    async def _restore(self, server_name: str, was_enabled: bool) -> Optional[ServerRecord]:
        if not self.registry.has(server_name):
            return None
        if was_enabled:
            try:
                return await self.registry.enable(server_name)
            except Exception as e:
                logger.error(f"Failed to re-enable server '{server_name}' after upgrade: {e}")
        return self.registry.get(server_name)

    async def _upgrade_node(self, package: PackageRecord, version: Optional[str]) -> str:
        path = Path(package.install_path)
        old_entry = self._node_entry(path, package.name, self._node_manifest(path, package.name))

        spec = f"{package.name}@{version or 'latest'}"
        result = await self.runner.run([self.npm_executable, "install", spec], cwd=path)
        problems = npm_output_problems(result, self.fail_on_warning)
        if problems:
            raise UpgradeFailedError(f"Error upgrading package: {'; '.join(problems)}")

        manifest = self._node_manifest(path, package.name)
        new_version = self._node_version(manifest, package.name)
        new_entry = self._node_entry(path, package.name, manifest)
        if new_entry != old_entry and self.registry.has(package.server_name):
            server = self.registry.get(package.server_name)
            if server.command == "node" and server.args and server.args[0] == old_entry:
                logger.info(f"Entry point of '{package.server_name}' changed to {new_entry}")
                await self.registry.update(
                    package.server_name,
                    UpdateServerRequest(args=[new_entry, *server.args[1:]]),
                )
        return new_version

    async def _upgrade_python(self, package: PackageRecord, version: Optional[str]) -> str:
        interpreter = venv_python(Path(package.install_path))
        spec = self._pip_spec(package.name, version)
        result = await self.runner.run([str(interpreter), "-m", "pip", "install", "--upgrade", spec])
        if not result.ok:
            raise UpgradeFailedError(f"pip upgrade failed: {result.stderr.strip()}")
        return await self._pip_version(interpreter, package.name)

    async def upgrade_all(self) -> UpgradeAllResult:
        """Upgrade every package; one failure does not stop the rest."""
        results: List[UpgradeResult] = []
        for server_name, package in list(self._packages.items()):
            if not self._upgradable(package):
                logger.warning(f"Skipping {package.name} for '{server_name}': install never completed")
                continue
            try:
                results.append(await self.upgrade(server_name))
            except GatewayError as e:
                results.append(UpgradeResult(server_name=server_name, success=False, error=e.message))
        return UpgradeAllResult(success=all(r.success for r in results), results=results)

    # Uninstall

    async def uninstall(self, server_name: str) -> None:
        """Remove the server, its copies, the install directory and the record."""
        package = self._require(server_name)
        async with self._locks(server_name):
            if self.registry.has(server_name):
                await self.registry.delete(server_name)

            install_path = Path(package.install_path)
            if install_path.exists():
                shutil.rmtree(install_path, ignore_errors=True)

            self._packages.pop(server_name, None)
            try:
                self.store.delete({"server_name": server_name})
            except Exception as e:
                logger.error(f"Failed to delete package record for '{server_name}': {e}")
        self._locks.discard(server_name)
        logger.info(f"Uninstalled {package.name} for '{server_name}'")

    # Updates

    async def check_for_updates(self, server_name: Optional[str] = None) -> List[UpdateInfo]:
        """Query registries for newer versions; failed lookups report ``unknown``."""
        if server_name is not None:
            packages = [self._require(server_name)]
        else:
            packages = list(self._packages.values())

        updates: List[UpdateInfo] = []
        for package in packages:
            latest = await self.oracle.latest_or_unknown(package.name, package.runtime)
            if latest == UNKNOWN_VERSION:
                updates.append(UpdateInfo(
                    server_name=package.server_name,
                    current_version=package.version,
                    latest_version=UNKNOWN_VERSION,
                    update_available=False,
                ))
                continue

            available = bool(package.version) and compare_versions(latest, package.version) > 0
            package.latest_version = latest
            package.update_available = available
            self._persist(package)
            updates.append(UpdateInfo(
                server_name=package.server_name,
                current_version=package.version,
                latest_version=latest,
                update_available=available,
            ))
        return updates
