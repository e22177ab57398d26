#!/usr/bin/env python3
"""
kaiproof CLI

Offline hashing, verification and share-link tooling for sealed sigils.

Usage:
    kaiproof [--config FILE] <command> [options]

Commands:
    capsule-hash    Hash a proof capsule
    svg-hash        Hash an SVG artifact (proof metadata stripped)
    bundle-hash     Recompute a bundle hash and compare with the claimed one
    verify          Verify a bundle JSON or a sealed SVG
    owner-key       Derive the owner key for a received bundle
    receipt-encode  Encode a bundle as a share parameter or URL
    receipt-decode  Decode a share parameter or URL
    config          Show or validate the effective configuration

Exit codes:
    0  success
    1  integrity failure (hash, signature, proof mismatch)
    2  usage error or malformed input
    3  authenticator or credential unavailable
"""

from __future__ import annotations

import argparse
import json
import sys
from enum import Enum
from typing import Any, List, Optional

import yaml

from kaiproof import __version__
from kaiproof.artifact import extract_proof_metadata, hash_svg_text
from kaiproof.bundle import compute_bundle_hash
from kaiproof.cache import VerificationCache
from kaiproof.capsule import hash_proof_capsule, parse_capsule
from kaiproof.config import ConfigError, ConfigManager
from kaiproof.errors import (
    CredentialUnavailable,
    IntegrityError,
    KaiproofError,
    MalformedPayload,
    MissingAuthorSignature,
    WebAuthnUnavailable,
)
from kaiproof.groth16 import load_verification_key
from kaiproof.observability import KaiproofLayer, configure_logging, correlation_scope, get_logger
from kaiproof.owner import derive_owner_key, receive_bundle
from kaiproof.receipt import build_share_url, decode_share_params, decode_share_url, encode_legacy_r_param, encode_share_payload
from kaiproof.result import unwrap
from kaiproof.store import JsonFileStore, MemoryStore
from kaiproof.verify import BundleVerifier, VerifyOptions

log = get_logger("main", KaiproofLayer.CLI)

EXIT_OK = 0
EXIT_INTEGRITY = 1
EXIT_USAGE = 2
EXIT_UNAVAILABLE = 3


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = EXIT_USAGE):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip("\n")
    return json.dumps(data, indent=2, default=str)


def exit_code_for(error: BaseException) -> int:
    if isinstance(error, CLIError):
        return error.exit_code
    if isinstance(error, (IntegrityError, MissingAuthorSignature)):
        return EXIT_INTEGRITY
    if isinstance(error, (CredentialUnavailable, WebAuthnUnavailable)):
        return EXIT_UNAVAILABLE
    if isinstance(error, (MalformedPayload, ConfigError, ValueError)):
        return EXIT_USAGE
    return EXIT_INTEGRITY


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except OSError as ex:
        raise CLIError(f"cannot read {path}: {ex.strerror}") from ex


def _read_json(path: str) -> Any:
    text = _read_text(path)
    try:
        return json.loads(text)
    except json.JSONDecodeError as ex:
        raise MalformedPayload(f"{path} is not JSON: {ex.msg}") from ex


def _looks_like_svg(text: str) -> bool:
    return text.lstrip().startswith("<")


def _read_bundle(path: str) -> Any:
    """Read a bundle from a JSON file or from the proof block of an SVG."""
    text = _read_text(path)
    if _looks_like_svg(text):
        return unwrap(extract_proof_metadata(text))
    try:
        return json.loads(text)
    except json.JSONDecodeError as ex:
        raise MalformedPayload(f"{path} is neither JSON nor SVG: {ex.msg}") from ex


class KaiproofCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="kaiproof",
            description="Offline proof-of-authorship tooling for sigil artifacts",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument("--version", "-V", action="version", version=f"kaiproof {__version__}")
        self.parser.add_argument(
            "--format", "-f",
            choices=[f.value for f in OutputFormat],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument("--quiet", "-q", action="store_true", help="Suppress error messages")
        self.parser.add_argument("--log-level", help="Override logging.level")
        self.parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()
        self.config_manager = ConfigManager()

    def _register_commands(self) -> None:
        sub = self.subparsers

        p = sub.add_parser("capsule-hash", help="Hash a proof capsule JSON file")
        p.add_argument("file", help="capsule JSON ('-' for stdin)")

        p = sub.add_parser("svg-hash", help="Hash an SVG artifact")
        p.add_argument("file", help="SVG file ('-' for stdin)")

        p = sub.add_parser("bundle-hash", help="Recompute a bundle hash")
        p.add_argument("file", help="bundle JSON or sealed SVG")

        p = sub.add_parser("verify", help="Verify a bundle JSON or sealed SVG")
        p.add_argument("file", help="bundle JSON or sealed SVG")
        p.add_argument("--svg", help="artifact SVG to check svgHash against (bundle JSON input)")
        p.add_argument("--vkey", help="Groth16 verification key (overrides zk.verification_key_path)")
        p.add_argument("--rp-id", action="append", dest="rp_ids", help="accepted rpId (repeatable)")
        p.add_argument("--no-rp-check", action="store_true", help="do not check authenticatorData.rpIdHash")
        p.add_argument("--require-author-sig", action="store_true", help="fail when the bundle is unsigned")
        p.add_argument("--pulse", type=int, help="current pulse (cache expiry, receipt)")
        p.add_argument("--verifier", help="verifier name recorded in the cache")

        p = sub.add_parser("owner-key", help="Derive an owner key")
        p.add_argument("--jwk", required=True, help="receiver public key JWK file")
        p.add_argument("--pulse", type=int, required=True, help="receive pulse")
        group = p.add_mutually_exclusive_group(required=True)
        group.add_argument("--bundle", help="received bundle JSON or sealed SVG")
        group.add_argument("--receive-hash", help="receiveBundleHash, when already computed")

        p = sub.add_parser("receipt-encode", help="Encode a bundle for a share link")
        p.add_argument("file", help="bundle JSON or sealed SVG")
        p.add_argument("--legacy", action="store_true", help="emit ?r= instead of ?p=c1:")
        p.add_argument("--base-url", help="build a full URL on this base")

        p = sub.add_parser("receipt-decode", help="Decode a share parameter or URL")
        p.add_argument("value", help="URL, 'c1:...' payload, or legacy r value")

        config = sub.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        config_sub.add_parser("show", help="Show effective configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return EXIT_OK

        try:
            self._setup(parsed)
            with correlation_scope():
                result = self._dispatch(parsed)
            if result is not None:
                print(format_output(result, OutputFormat(parsed.format)))
            return EXIT_OK
        except (CLIError, KaiproofError, ValueError) as e:
            code = exit_code_for(e)
            log.error(f"{parsed.command} failed", error_code=getattr(e, "code", ""), exit_code=code)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return code

    def _setup(self, parsed: argparse.Namespace) -> None:
        if parsed.config:
            self.config_manager.load_from_file(parsed.config)
        if parsed.log_level:
            self.config_manager.set("logging.level", parsed.log_level)
        if parsed.log_json:
            self.config_manager.set("logging.json", True)
        cfg = self.config_manager.config
        configure_logging(cfg.logging.level.get(), json_output=cfg.logging.json.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)
        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)
        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")
        return handler(args)

    # Hash handlers
    def _handle_capsule_hash(self, args: argparse.Namespace) -> Any:
        obj = _read_json(args.file)
        capsule = unwrap(parse_capsule(obj))
        return {"capsuleHash": hash_proof_capsule(obj), "verifierSlug": capsule.verifier_slug}

    def _handle_svg_hash(self, args: argparse.Namespace) -> Any:
        return {"svgHash": hash_svg_text(_read_text(args.file))}

    def _handle_bundle_hash(self, args: argparse.Namespace) -> Any:
        bundle = _read_bundle(args.file)
        if not isinstance(bundle, dict):
            raise MalformedPayload("bundle must be a JSON object")
        computed = compute_bundle_hash(bundle)
        claimed = bundle.get("bundleHash")
        return {
            "bundleHash": computed,
            "claimed": claimed,
            "matches": isinstance(claimed, str) and claimed.lower() == computed,
        }

    # Verification
    def _verifier(self, args: argparse.Namespace) -> BundleVerifier:
        cfg = self.config_manager.config
        vkey_path = args.vkey or cfg.zk.verification_key_path.get()
        vkey = load_verification_key(vkey_path) if vkey_path else None
        cache_path = cfg.cache.path.get()
        store = JsonFileStore(cache_path) if cache_path else MemoryStore(cfg.cache.max_entries.get())
        version = cfg.cache.version.get()
        return BundleVerifier(vkey, VerificationCache(store, version=version), verification_version=version)

    def _handle_verify(self, args: argparse.Namespace) -> Any:
        cfg = self.config_manager.config
        rp_id: Any = None
        if not args.no_rp_check and cfg.webauthn.enforce_rp_id.get():
            rp_id = args.rp_ids or cfg.webauthn.rp_id.get()
        options = VerifyOptions(
            rp_id=rp_id,
            require_author_sig=args.require_author_sig,
            current_pulse=args.pulse,
            verifier=args.verifier,
        )
        verifier = self._verifier(args)
        text = _read_text(args.file)
        if _looks_like_svg(text):
            if args.svg:
                raise CLIError("--svg only applies to bundle JSON input")
            report = verifier.verify_svg(text, options)
        else:
            try:
                bundle = json.loads(text)
            except json.JSONDecodeError as ex:
                raise MalformedPayload(f"{args.file} is neither JSON nor SVG: {ex.msg}") from ex
            svg_text = _read_text(args.svg) if args.svg else None
            report = verifier.verify_bundle(bundle, svg_text, options)
        return report.to_dict()

    # Owner key
    def _handle_owner_key(self, args: argparse.Namespace) -> Any:
        jwk = _read_json(args.jwk)
        if not isinstance(jwk, dict):
            raise MalformedPayload("receiver JWK must be a JSON object")
        if args.receive_hash:
            return {
                "ownerKey": derive_owner_key(jwk, args.pulse, args.receive_hash.lower()),
                "receiveBundleHash": args.receive_hash.lower(),
            }
        bundle = _read_bundle(args.bundle)
        if not isinstance(bundle, dict):
            raise MalformedPayload("bundle must be a JSON object")
        received = receive_bundle(bundle, jwk, args.pulse)
        return {
            "ownerKey": received.owner_key,
            "receiveBundleHash": received.receive_bundle_hash,
            "ownerKeyDerivation": received.derivation,
        }

    # Share links
    def _handle_receipt_encode(self, args: argparse.Namespace) -> Any:
        bundle = _read_bundle(args.file)
        if args.base_url:
            return {"url": build_share_url(args.base_url, bundle, compact=not args.legacy)}
        if args.legacy:
            return {"r": encode_legacy_r_param(bundle)}
        return {"p": encode_share_payload(bundle)}

    def _handle_receipt_decode(self, args: argparse.Namespace) -> Any:
        value = args.value.strip()
        if "://" in value or value.startswith("?"):
            return decode_share_url(value if "://" in value else f"http://local/{value}")
        if value.startswith("c1:"):
            return decode_share_params({"p": value})
        return decode_share_params({"r": value})

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return self.config_manager.config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = self.config_manager.validate()
        if errors:
            raise CLIError("; ".join(errors))
        return {"valid": True}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return self.config_manager.export_schema()

    def _handle_config(self, args: argparse.Namespace) -> Any:
        return self._handle_config_show(args)


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    return KaiproofCLI().run(argv)


if __name__ == "__main__":
    sys.exit(main())
