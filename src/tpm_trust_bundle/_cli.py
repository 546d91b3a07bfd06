# Copyright 2025 The Sigstore Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""The main entry-point for the tpm_trust_bundle package."""

import contextlib
import logging
import os
import pathlib
import subprocess
import sys
from typing import Optional

import click

import tpm_trust_bundle
from tpm_trust_bundle import _cache
from tpm_trust_bundle import _github
from tpm_trust_bundle import _http
from tpm_trust_bundle import api
from tpm_trust_bundle import errors
from tpm_trust_bundle import vendors
from tpm_trust_bundle._bundle import codec
from tpm_trust_bundle._bundle import config as config_lib
from tpm_trust_bundle._bundle import generator
from tpm_trust_bundle._bundle import metadata as metadata_lib


class NoOpTracer:
    def start_as_current_span(self, name):
        @contextlib.contextmanager
        def noop_context():
            class NoOpSpan:
                def set_attribute(self, key, value):
                    pass

            yield NoOpSpan()

        return noop_context()


# Global tracer variable, we will initialized this within the main() function
tracer = None

_SUPPORTED_SAMPLERS = ("always_on", "always_off", "traceidratio")

INTERMEDIATES_CONFIG_FILENAME = ".tpm-intermediates.yaml"


# Decorator for the commonly used option to select a release.
_date_option = click.option(
    "--date",
    "-d",
    type=str,
    default="",
    metavar="YYYY-MM-DD",
    help="Bundle release date. Defaults to the latest release.",
)

# Decorator for the commonly used option to skip overwrite prompts.
_force_option = click.option(
    "--force",
    "-f",
    is_flag=True,
    default=False,
    help="Overwrite existing files without prompting.",
)

# Decorator for the commonly used option to pick a bundle type.
_type_option = click.option(
    "--type",
    "-t",
    "bundle_type",
    type=click.Choice(["root", "intermediate"]),
    default=None,
    help="Bundle type. Defaults to both bundles when available.",
)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes")


def _cache_dir_from_env() -> Optional[pathlib.Path]:
    value = os.environ.get("TPMTB_CACHE_DIR")
    return pathlib.Path(value) if value else None


def _init_tracer():
    if not _env_flag("OTEL_ENABLED"):
        return NoOpTracer()

    sampler = os.environ.get("OTEL_TRACES_SAMPLER")
    if sampler and sampler not in _SUPPORTED_SAMPLERS:
        raise errors.ConfigInvalid(
            f"unsupported OTEL_TRACES_SAMPLER {sampler!r}: must be one of "
            f"{', '.join(_SUPPORTED_SAMPLERS)}"
        )

    try:
        from opentelemetry import trace  # type: ignore[import-error]
        from opentelemetry.instrumentation import (
            auto_instrumentation,  # type: ignore[import-error]
        )
    except ImportError:
        logging.debug("OpenTelemetry not installed. Tracing is disabled.")
        return NoOpTracer()

    auto_instrumentation.initialize()
    return trace.get_tracer(__name__)


@click.group(
    context_settings=dict(
        help_option_names=["-h", "--help"], auto_envvar_prefix="TPMTB"
    ),
    epilog=(
        "Check https://github.com/loicsikidi/tpm-ca-certificates for "
        "documentation and more details."
    ),
)
@click.version_option(tpm_trust_bundle.__version__, "--version")
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
    show_default=True,
    metavar="LEVEL",
    help="Set the logging level. This can also be set via the "
    "TPMTB_LOG_LEVEL env var.",
)
def main(log_level: str) -> None:
    """TPM Endorsement Key CA trust bundles.

    Use each subcommand's `--help` option for details on each mode.
    """
    global tracer

    logging.basicConfig(
        format="%(message)s", level=getattr(logging, log_level.upper())
    )

    try:
        tracer = _init_tracer()
    except Exception as e:
        logging.error(
            f"Failed to initialize OpenTelemetry auto instrumentation: {e}"
        )
        sys.exit(1)


@main.group(name="bundle")
def _bundle() -> None:
    """Get, verify and generate TPM trust bundles.

    Bundles are published as GitHub releases tagged with their date. Each
    release is signed by its release workflow through Sigstore, and carries
    a SLSA provenance attestation.
    """


def _existing_files(
    directory: pathlib.Path, names: list[str]
) -> list[pathlib.Path]:
    return [directory / name for name in names if (directory / name).exists()]


def _confirm_overwrite(paths: list[pathlib.Path]) -> None:
    for path in paths:
        click.echo(f"File {path} already exists.", err=True)
    if not click.confirm("Override?", default=False, err=True):
        raise click.Abort()


@_bundle.command(name="save")
@_date_option
@click.option(
    "--vendor-ids",
    type=str,
    default="",
    metavar="CSV",
    help="Comma separated vendor IDs to keep when loading the bundle.",
)
@click.option(
    "--output-dir",
    "-o",
    type=pathlib.Path,
    default=pathlib.Path("."),
    show_default=True,
    help="Directory to save the bundle and its verification material to.",
)
@_force_option
@click.option(
    "--local-cache",
    is_flag=True,
    default=False,
    help="Save to the local cache directory instead of --output-dir.",
)
def _save(
    date: str,
    vendor_ids: str,
    output_dir: pathlib.Path,
    force: bool,
    local_cache: bool,
) -> None:
    """Save a verified bundle for offline use.

    Writes the bundles, `checksums.txt`, its signature, the provenance
    attestation, the Sigstore trusted root and `config.json`, which together
    allow verifying the bundle again without network access.
    """
    with tracer.start_as_current_span("Save") as span:
        span.set_attribute("tpmtb.date", date)
        span.set_attribute("tpmtb.local_cache", local_cache)
        cache_dir = _cache_dir_from_env()
        if local_cache:
            target = cache_dir or _cache.default_cache_dir()
        else:
            target = output_dir
        try:
            if not local_cache:
                if not output_dir.is_dir():
                    raise errors.ConfigInvalid(
                        f"output directory {output_dir} does not exist"
                    )
                existing = _existing_files(
                    output_dir, list(_cache.CACHE_FILENAMES)
                )
                if existing and not force:
                    _confirm_overwrite(existing)

            response = api.save(
                api.SaveConfig(
                    date=date,
                    vendor_ids=vendors.parse_csv(vendor_ids),
                    cache_dir=cache_dir,
                )
            )
            response.persist(target)
        except click.Abort:
            raise
        except Exception as err:
            click.echo(f"Saving failed with error: {err}", err=True)
            sys.exit(1)

        click.echo(f"Bundle saved to {target}")
        for name in _cache.CACHE_FILENAMES:
            if (target / name).exists():
                click.echo(f"  {name}")


@_bundle.command(name="download")
@_date_option
@click.option(
    "--output-dir",
    "-o",
    type=str,
    default=".",
    show_default=True,
    help="Directory to write bundles to, or '-' for stdout.",
)
@_type_option
@click.option(
    "--skip-verify",
    is_flag=True,
    default=False,
    help="Skip bundle verification.",
)
@_force_option
def _download(
    date: str,
    output_dir: str,
    bundle_type: Optional[str],
    skip_verify: bool,
    force: bool,
) -> None:
    """Download a bundle from its GitHub release and verify it."""
    with tracer.start_as_current_span("Download") as span:
        span.set_attribute("tpmtb.date", date)
        span.set_attribute("tpmtb.skip_verify", skip_verify)
        to_stdout = output_dir == "-"
        try:
            if to_stdout and bundle_type is None:
                raise errors.ConfigInvalid(
                    "when using stdout (--output-dir -), --type must be "
                    "root or intermediate"
                )
            if not to_stdout and not pathlib.Path(output_dir).is_dir():
                raise errors.ConfigInvalid(
                    f"output directory {output_dir} does not exist"
                )

            bundle = api.get_trusted_bundle(
                api.GetConfig(
                    date=date,
                    skip_verify=skip_verify,
                    cache_dir=_cache_dir_from_env(),
                    auto_update=api.AutoUpdateConfig(disable_auto_update=True),
                )
            )
            files = []
            if bundle_type in (None, "root"):
                files.append(
                    (metadata_lib.BundleType.ROOT, bundle.get_raw_root())
                )
            intermediate = bundle.get_raw_intermediate()
            if bundle_type == "intermediate" and not intermediate:
                raise errors.NotFound(
                    "intermediate bundle not available for this release"
                )
            if bundle_type in (None, "intermediate") and intermediate:
                files.append(
                    (metadata_lib.BundleType.INTERMEDIATE, intermediate)
                )

            if to_stdout:
                click.echo(files[0][1], nl=False)
                return

            directory = pathlib.Path(output_dir)
            existing = _existing_files(
                directory, [kind.filename for kind, _ in files]
            )
            if existing and not force:
                _confirm_overwrite(existing)
            for kind, data in files:
                path = directory / kind.filename
                path.write_bytes(data)
                path.chmod(0o644)
                click.echo(f"Downloaded {kind} bundle to {path}")
        except click.Abort:
            raise
        except Exception as err:
            click.echo(f"Download failed with error: {err}", err=True)
            sys.exit(1)

        if skip_verify:
            click.echo("Verification skipped (--skip-verify)", err=True)
        else:
            click.echo("Bundle verified")


@_bundle.command(name="list")
@click.option(
    "--limit",
    "-l",
    type=int,
    default=10,
    show_default=True,
    help="Maximum number of releases to show.",
)
@click.option(
    "--sort",
    "-s",
    type=click.Choice(["asc", "desc"]),
    default="desc",
    show_default=True,
    help="Sort by publication date.",
)
def _list(limit: int, sort: str) -> None:
    """List the published bundle releases."""
    with tracer.start_as_current_span("List") as span:
        span.set_attribute("tpmtb.limit", limit)
        try:
            if limit <= 0:
                raise errors.ConfigInvalid("--limit must be greater than 0")
            github = _github.GitHubClient(_http.HttpClient(api.http_session()))
            releases = github.list_releases(
                _github.SOURCE_REPO,
                page_size=limit,
                descending=sort == "desc",
            )[:limit]
        except Exception as err:
            click.echo(f"Listing failed with error: {err}", err=True)
            sys.exit(1)

        if not releases:
            click.echo("No bundle releases found")
            return
        click.echo(f"Available TPM trust bundle releases ({len(releases)}):")
        for release in releases:
            click.echo(f"  {release.tag_name}")


def _detect_checksum_file(
    bundle_path: pathlib.Path, explicit: Optional[pathlib.Path], name: str
) -> bytes:
    if explicit is not None:
        return explicit.read_bytes()
    candidate = bundle_path.parent / name
    if candidate.is_file():
        logging.debug("Using %s", candidate)
        return candidate.read_bytes()
    return b""


@_bundle.command(name="verify")
@click.argument("bundle_path", type=pathlib.Path, metavar="BUNDLE")
@click.option(
    "--checksums-file",
    type=pathlib.Path,
    default=None,
    help="Path to checksums.txt. Looked up next to BUNDLE, else downloaded.",
)
@click.option(
    "--checksums-signature",
    type=pathlib.Path,
    default=None,
    help=(
        "Path to checksums.txt.sigstore.json. Looked up next to BUNDLE, "
        "else downloaded."
    ),
)
@click.option(
    "--date",
    "-d",
    type=str,
    default="",
    help="Expected bundle date. Read from the bundle header by default.",
)
@click.option(
    "--commit",
    "-c",
    type=str,
    default="",
    help="Expected source commit. Read from the bundle header by default.",
)
def _verify(
    bundle_path: pathlib.Path,
    checksums_file: Optional[pathlib.Path],
    checksums_signature: Optional[pathlib.Path],
    date: str,
    commit: str,
) -> None:
    """Verify the origin of a bundle.

    The bundle at BUNDLE must be listed in the signed `checksums.txt` of its
    release and attested by the release workflow, at the same commit and on
    the same date.
    """
    with tracer.start_as_current_span("Verify") as span:
        span.set_attribute("tpmtb.bundle_path", str(bundle_path))
        try:
            if bool(date) != bool(commit):
                raise errors.ConfigInvalid(
                    "--date and --commit must be provided together"
                )
            data = bundle_path.read_bytes()
            api.verify_trusted_bundle(
                api.VerifyConfig(
                    bundle=data,
                    date=date,
                    commit=commit,
                    checksum=_detect_checksum_file(
                        bundle_path, checksums_file, _cache.CHECKSUMS_FILENAME
                    ),
                    checksum_signature=_detect_checksum_file(
                        bundle_path,
                        checksums_signature,
                        _cache.CHECKSUMS_SIGNATURE_FILENAME,
                    ),
                    cache_dir=_cache_dir_from_env(),
                )
            )
        except Exception as err:
            click.echo(f"Verification failed with error: {err}", err=True)
            sys.exit(1)

        click.echo("Verification succeeded")


@_bundle.command(name="validate")
@click.argument("bundle_path", type=pathlib.Path, metavar="BUNDLE")
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    default=False,
    help="Suppress output, only return the exit code.",
)
def _validate(bundle_path: pathlib.Path, quiet: bool) -> None:
    """Check the structure and annotations of a bundle.

    Every annotation of every certificate must agree with the certificate.
    Up to ten problems are reported, each with its line number. Nothing is
    downloaded and the origin of the bundle is not checked; use `verify`
    for that.
    """
    with tracer.start_as_current_span("Validate") as span:
        span.set_attribute("tpmtb.bundle_path", str(bundle_path))
        try:
            codec.validate_bundle(bundle_path.read_bytes())
        except Exception as err:
            if not quiet:
                click.echo(f"Validation failed with error: {err}", err=True)
            sys.exit(1)

        if not quiet:
            click.echo(f"{bundle_path} is valid")


def _git(*args: str) -> str:
    try:
        completed = subprocess.run(
            ["git", *args], capture_output=True, check=True, text=True
        )
    except (OSError, subprocess.CalledProcessError) as err:
        raise errors.ConfigInvalid(
            f"failed to get git info (use --date and --commit to specify "
            f"manually): {err}"
        ) from err
    return completed.stdout.strip()


def _resolve_git_metadata() -> tuple[str, str]:
    tag = _git("describe", "--tags", "--exact-match", "HEAD")
    if not metadata_lib.is_date_tag(tag):
        raise errors.ConfigInvalid(
            f"git tag {tag!r} is not in YYYY-MM-DD format (use --date and "
            "--commit to specify manually)"
        )
    commit = _git("rev-parse", "HEAD")
    metadata_lib.validate_commit(commit)
    return tag, commit


def _resolve_bundle_type(
    value: Optional[str], config_path: pathlib.Path
) -> metadata_lib.BundleType:
    if value:
        return metadata_lib.BundleType.parse(value)
    if config_path.name == INTERMEDIATES_CONFIG_FILENAME:
        return metadata_lib.BundleType.INTERMEDIATE
    return metadata_lib.BundleType.ROOT


@_bundle.command(name="generate")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=pathlib.Path,
    default=pathlib.Path(".tpm-roots.yaml"),
    show_default=True,
    help="Path to the certificates configuration file.",
)
@click.option(
    "--output",
    "-o",
    type=pathlib.Path,
    default=None,
    help="Output file path. Defaults to stdout.",
)
@click.option(
    "--workers",
    "-j",
    type=int,
    default=0,
    show_default=True,
    help=(
        "Number of concurrent downloads (0 to auto-detect, at most "
        f"{generator.MAX_WORKERS})."
    ),
)
@click.option(
    "--date",
    "-d",
    type=str,
    default="",
    help="Bundle date. Defaults to the git tag of HEAD.",
)
@click.option(
    "--commit",
    type=str,
    default="",
    help="Source commit. Defaults to HEAD.",
)
@_type_option
def _generate(
    config_path: pathlib.Path,
    output: Optional[pathlib.Path],
    workers: int,
    date: str,
    commit: str,
    bundle_type: Optional[str],
) -> None:
    """Generate a bundle from a configuration file.

    Every certificate is downloaded and checked against its fingerprint.
    Generation is deterministic: the same configuration always yields the
    same bundle, whatever the number of workers.
    """
    with tracer.start_as_current_span("Generate") as span:
        span.set_attribute("tpmtb.config", str(config_path))
        span.set_attribute("tpmtb.workers", workers)
        try:
            if workers < 0 or workers > generator.MAX_WORKERS:
                raise errors.ConfigInvalid(
                    f"workers value {workers} must be between 0 and "
                    f"{generator.MAX_WORKERS}"
                )
            if bool(date) != bool(commit):
                raise errors.ConfigInvalid(
                    "--date and --commit must be provided together"
                )
            kind = _resolve_bundle_type(bundle_type, config_path)
            if not date:
                date, commit = _resolve_git_metadata()
            config = config_lib.load(config_path)
            data = generator.Generator().generate(
                config,
                date=date,
                commit=commit,
                bundle_type=kind,
                workers=workers,
                filename=output.name if output is not None else None,
            )
            if output is None:
                click.echo(data, nl=False)
            else:
                output.write_bytes(data)
                output.chmod(0o644)
        except Exception as err:
            click.echo(f"Generation failed with error: {err}", err=True)
            sys.exit(1)
