"""
sitebox-orchestrator — launch planning.

File: src/sitebox_orchestrator/sandbox/launch.py

Purpose
- Turn a sandbox record into concrete process invocations, generated server config files,
  and the environment the application sees.

Functional requirements
- Every engine binds to the sandbox's host/port and serves its document root.
- Runtime extensions follow the storage backend actually recorded on the sandbox.
- Storage details reach the application through ``SITEBOX_DB_*`` variables; passwords are
  passed only through the environment, never written to generated files.
- Planning is pure; writing generated files happens in ``materialize``.
"""

from __future__ import annotations

import os
import re
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from jinja2 import Environment, StrictUndefined

from sitebox_orchestrator.constants import CLIENT_SERVER_RUNTIME_EXTENSIONS, EMBEDDED_RUNTIME_EXTENSIONS
from sitebox_orchestrator.domain.models import (
    ApacheServerConfig,
    BuiltinServerConfig,
    NginxServerConfig,
    Sandbox,
    StorageBackend,
)
from sitebox_orchestrator.utils.fs import atomic_write

# ``php -S`` prints this to stderr once the socket is listening.
BUILTIN_READY_MARKER: Final[re.Pattern[str]] = re.compile(r"Development Server \(.+\) started")

EMBEDDED_DATABASE_RELPATH: Final[str] = "database/site.sqlite"

# Loaded only when the httpd build does not already provide them.
_APACHE_BASE_MODULES: Final[tuple[str, ...]] = ("mpm_prefork", "authz_core", "dir", "mime", "unixd")

_TEMPLATES: Final[Environment] = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    newline_sequence="\n",
    keep_trailing_newline=True,
)

_NGINX_TEMPLATE: Final[str] = """\
daemon off;
master_process off;
worker_processes 1;
pid {{ pid_path }};
error_log stderr notice;

events {
    worker_connections {{ worker_connections }};
}

http {
    access_log off;
    client_max_body_size {{ client_max_body_size_mb }}m;
    client_body_temp_path {{ temp_dir }}/body;
    fastcgi_temp_path {{ temp_dir }}/fastcgi;
    proxy_temp_path {{ temp_dir }}/proxy;
    uwsgi_temp_path {{ temp_dir }}/uwsgi;
    scgi_temp_path {{ temp_dir }}/scgi;
    default_type application/octet-stream;

    server {
        listen {{ bind_host }}:{{ port }};
        root {{ document_root }};
        index index.php index.html;

        location / {
            try_files $uri $uri/ /index.php?$args;
        }

        location ~ \\.php$ {
            fastcgi_pass unix:{{ socket_path }};
            fastcgi_index index.php;
            fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
            fastcgi_param QUERY_STRING $query_string;
            fastcgi_param REQUEST_METHOD $request_method;
            fastcgi_param CONTENT_TYPE $content_type;
            fastcgi_param CONTENT_LENGTH $content_length;
            fastcgi_param REQUEST_URI $request_uri;
            fastcgi_param DOCUMENT_ROOT $document_root;
            fastcgi_param SERVER_NAME $host;
            fastcgi_param SERVER_PORT $server_port;
            fastcgi_param REMOTE_ADDR $remote_addr;
            fastcgi_param HTTP_HOST $host;
        }
    }
}
"""

_APACHE_TEMPLATE: Final[str] = """\
Listen {{ bind_host }}:{{ port }}
PidFile {{ pid_path }}
ErrorLog /dev/stderr
LogLevel warn
ServerName {{ bind_host }}
{% for module in modules %}
<IfModule !{{ module }}_module>
    LoadModule {{ module }}_module modules/mod_{{ module }}.so
</IfModule>
{% endfor %}
{% if runtime_module %}
<IfModule !php_module>
    LoadModule php_module {{ runtime_module }}
</IfModule>
{% endif %}
DocumentRoot "{{ document_root }}"
<Directory "{{ document_root }}">
    AllowOverride {{ "All" if allow_override else "None" }}
    Require all granted
</Directory>
DirectoryIndex index.php index.html
<IfModule php_module>
    AddType application/x-httpd-php .php
{% for extension in extensions %}
    php_admin_value extension {{ extension }}
{% endfor %}
</IfModule>
"""


@dataclass(frozen=True, slots=True)
class RuntimeBinaries:
    php: str = "php"
    php_cgi: str = "php-cgi"
    nginx: str = "nginx"
    apache: str = "httpd"
    apache_runtime_module: str | None = None
    versions: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RuntimeBinaries:
        runtime = config["runtime"]
        server = config["server"]
        return cls(
            php=str(runtime["binary"]),
            php_cgi=str(runtime["cgi_binary"]),
            nginx=str(server["nginx_binary"]),
            apache=str(server["apache_binary"]),
            apache_runtime_module=str(server["apache_runtime_module"]) or None,
            versions=dict(runtime.get("binaries", {})),
        )

    def php_for(self, version: str) -> str:
        return self.versions.get(version, self.php)

    def php_cgi_for(self, version: str) -> str:
        pinned = self.versions.get(version)
        if pinned is None:
            return self.php_cgi
        sibling = Path(pinned).with_name("php-cgi" + Path(pinned).suffix)
        return str(sibling) if sibling.exists() else self.php_cgi

    def missing(self, sandbox: Sandbox) -> list[str]:
        """Binaries the sandbox's engine needs that cannot be resolved."""
        needed = [self.php_for(sandbox.runtime_version)]
        if isinstance(sandbox.server, NginxServerConfig):
            needed = [self.nginx, self.php_cgi_for(sandbox.runtime_version)]
        elif isinstance(sandbox.server, ApacheServerConfig):
            needed = [self.apache]
        return [binary for binary in needed if shutil.which(binary) is None]


@dataclass(frozen=True, slots=True)
class ProcessSpec:
    role: str
    argv: tuple[str, ...]
    cwd: Path


@dataclass(frozen=True, slots=True)
class LaunchPlan:
    sandbox_id: str
    primary: ProcessSpec
    companions: tuple[ProcessSpec, ...]
    env: Mapping[str, str]
    files: Mapping[Path, str]
    readiness_marker: re.Pattern[str] | None
    fingerprint: str

    def materialize(self) -> None:
        for path, content in self.files.items():
            path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(path, content)


def runtime_extensions(backend: StorageBackend) -> tuple[str, ...]:
    if backend is StorageBackend.CLIENT_SERVER:
        return CLIENT_SERVER_RUNTIME_EXTENSIONS
    return EMBEDDED_RUNTIME_EXTENSIONS


def storage_environment(sandbox: Sandbox, *, password: str | None = None) -> dict[str, str]:
    env = {
        "SITEBOX_SANDBOX_ID": sandbox.id,
        "SITEBOX_DOMAIN": sandbox.domain,
        "SITEBOX_PORT": str(sandbox.port),
        "SITEBOX_DB_BACKEND": sandbox.storage_backend.value,
        "SITEBOX_DB_ENGINE": sandbox.storage_engine_kind.value,
    }
    if sandbox.storage_backend is StorageBackend.EMBEDDED:
        env["SITEBOX_DB_PATH"] = str(Path(sandbox.root_path) / EMBEDDED_DATABASE_RELPATH)
        return env
    endpoint = sandbox.storage_endpoint
    assert endpoint is not None
    env["SITEBOX_DB_HOST"] = endpoint.host
    env["SITEBOX_DB_NAME"] = endpoint.database
    if endpoint.port is not None:
        env["SITEBOX_DB_PORT"] = str(endpoint.port)
    if endpoint.user is not None:
        env["SITEBOX_DB_USER"] = endpoint.user
    if password:
        env["SITEBOX_DB_PASSWORD"] = password
    return env


def build_launch_plan(
    sandbox: Sandbox,
    *,
    binaries: RuntimeBinaries,
    runtime_dir: Path,
    bind_host: str = "127.0.0.1",
    storage_password: str | None = None,
    base_env: Mapping[str, str] | None = None,
) -> LaunchPlan:
    root = Path(sandbox.root_path)
    document_root = (root / sandbox.server.document_root).resolve()
    extensions = runtime_extensions(sandbox.storage_backend)
    env = dict(os.environ if base_env is None else base_env)
    env.update(storage_environment(sandbox, password=storage_password))

    companions: tuple[ProcessSpec, ...] = ()
    files: dict[Path, str] = {}
    marker: re.Pattern[str] | None = None
    server = sandbox.server

    if isinstance(server, BuiltinServerConfig):
        argv = [binaries.php_for(sandbox.runtime_version)]
        argv.extend(_extension_flags(extensions))
        argv.extend(["-S", f"{bind_host}:{sandbox.port}", "-t", str(document_root)])
        if server.router_script is not None:
            argv.append(str(root / server.router_script))
        primary = ProcessSpec(role="server", argv=tuple(argv), cwd=document_root)
        marker = BUILTIN_READY_MARKER
    elif isinstance(server, NginxServerConfig):
        socket_path = runtime_dir / "fastcgi.sock"
        conf_path = runtime_dir / "nginx.conf"
        cgi_argv = [binaries.php_cgi_for(sandbox.runtime_version)]
        cgi_argv.extend(_extension_flags(extensions))
        cgi_argv.extend(["-b", str(socket_path)])
        env["PHP_FCGI_CHILDREN"] = str(server.fastcgi_children)
        companions = (ProcessSpec(role="fastcgi", argv=tuple(cgi_argv), cwd=document_root),)
        files[conf_path] = render_nginx_conf(
            server,
            bind_host=bind_host,
            port=sandbox.port,
            document_root=document_root,
            runtime_dir=runtime_dir,
            socket_path=socket_path,
        )
        primary = ProcessSpec(
            role="server",
            argv=(binaries.nginx, "-p", str(runtime_dir), "-c", str(conf_path)),
            cwd=runtime_dir,
        )
    elif isinstance(server, ApacheServerConfig):
        conf_path = runtime_dir / "httpd.conf"
        files[conf_path] = render_apache_conf(
            server,
            bind_host=bind_host,
            port=sandbox.port,
            document_root=document_root,
            runtime_dir=runtime_dir,
            runtime_module=binaries.apache_runtime_module,
            extensions=extensions,
        )
        primary = ProcessSpec(
            role="server",
            argv=(binaries.apache, "-X", "-DFOREGROUND", "-f", str(conf_path)),
            cwd=runtime_dir,
        )
    else:  # pragma: no cover - closed union
        raise TypeError(f"unsupported server config {type(server).__name__}")

    return LaunchPlan(
        sandbox_id=sandbox.id,
        primary=primary,
        companions=companions,
        env=env,
        files=files,
        readiness_marker=marker,
        fingerprint=sandbox.runtime_config().fingerprint(),
    )


def render_nginx_conf(
    server: NginxServerConfig,
    *,
    bind_host: str,
    port: int,
    document_root: Path,
    runtime_dir: Path,
    socket_path: Path,
) -> str:
    return _render(
        _NGINX_TEMPLATE,
        worker_connections=server.worker_connections,
        client_max_body_size_mb=server.client_max_body_size_mb,
        pid_path=runtime_dir / "nginx.pid",
        temp_dir=runtime_dir / "nginx-temp",
        bind_host=bind_host,
        port=port,
        document_root=document_root,
        socket_path=socket_path,
    )


def render_apache_conf(
    server: ApacheServerConfig,
    *,
    bind_host: str,
    port: int,
    document_root: Path,
    runtime_dir: Path,
    runtime_module: str | None,
    extensions: tuple[str, ...],
) -> str:
    return _render(
        _APACHE_TEMPLATE,
        bind_host=bind_host,
        port=port,
        pid_path=runtime_dir / "httpd.pid",
        modules=(*_APACHE_BASE_MODULES, *server.modules),
        runtime_module=runtime_module,
        document_root=document_root,
        allow_override=server.allow_override,
        extensions=extensions,
    )


def _render(source: str, **variables: object) -> str:
    return _TEMPLATES.from_string(source).render(**variables)


def _extension_flags(extensions: tuple[str, ...]) -> list[str]:
    flags: list[str] = []
    for extension in extensions:
        flags.extend(["-d", f"extension={extension}"])
    return flags


__all__ = [
    "BUILTIN_READY_MARKER",
    "EMBEDDED_DATABASE_RELPATH",
    "LaunchPlan",
    "ProcessSpec",
    "RuntimeBinaries",
    "build_launch_plan",
    "render_apache_conf",
    "render_nginx_conf",
    "runtime_extensions",
    "storage_environment",
]
