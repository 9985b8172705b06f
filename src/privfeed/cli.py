"""Command line front end for the private feed key engine.

Every command works on local files: sealed owner / follower state, raw
ledger records (FeedState, Grant, RekeyEvent, EncryptedPost in their
canonical binary encoding) and hex-encoded secp256k1 keys. Publishing the
records is left to whatever talks to the ledger.
"""

from __future__ import annotations

import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from privfeed.config import FeedConfig
from privfeed.core.exceptions import KeyNotFoundError, PrivateFeedError
from privfeed.core.hashing import key_fingerprint
from privfeed.core.models import EncryptedPost, FeedState, Grant, RekeyEvent
from privfeed.feed.engine import FeedKeyEngine
from privfeed.feed.follower import FollowerKeyStore
from privfeed.feed.grant import open_grant
from privfeed.logging_config import configure_logging
from privfeed.security.crypto import generate_keypair
from privfeed.security.keystore import FeedSecretStore


logger = logging.getLogger("privfeed.cli")

PASSPHRASE_ENV = "PRIVFEED_PASSPHRASE"


def _read_hex(path: str) -> bytes:
    return bytes.fromhex(Path(path).read_text(encoding="utf-8").strip())


def _identity_key(args) -> bytes:
    """Private key from --private, or from the OS keystore entry named by --keyring."""
    if args.keyring:
        key = FeedSecretStore(args.keyring).load_identity_key()
        if key is None:
            raise KeyNotFoundError(f"no identity key for {args.keyring} in the OS keystore")
        return key
    return _read_hex(args.private)


def _passphrase(args) -> str:
    if args.passphrase:
        return args.passphrase
    args.passphrase = os.getenv(PASSPHRASE_ENV) or getpass.getpass("State passphrase: ")
    return args.passphrase


def _load_engine(args, config: FeedConfig) -> FeedKeyEngine:
    return FeedKeyEngine.import_state(Path(args.state).read_bytes(), _passphrase(args), config=config)


def _save_engine(args, engine: FeedKeyEngine) -> None:
    Path(args.state).write_bytes(engine.export_state(_passphrase(args)))


def _load_store(args, config: FeedConfig) -> FollowerKeyStore:
    return FollowerKeyStore.import_state(Path(args.store).read_bytes(), _passphrase(args), config=config)


def _save_store(args, store: FollowerKeyStore) -> None:
    Path(args.store).write_bytes(store.export_state(_passphrase(args)))


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


def cmd_keygen(args, config: FeedConfig) -> int:
    private_key, public_key = generate_keypair()
    if args.keyring:
        FeedSecretStore(args.keyring).save_identity_key(private_key)
    else:
        Path(args.private_out).write_text(private_key.hex() + "\n", encoding="utf-8")
    logger.info("generated identity key %s", key_fingerprint(public_key))
    Path(args.public_out).write_text(public_key.hex() + "\n", encoding="utf-8")
    print(public_key.hex())
    return 0


def cmd_init(args, config: FeedConfig) -> int:
    engine, feed_state = FeedKeyEngine.create(args.owner, _read_hex(args.owner_public), config=config)
    _save_engine(args, engine)
    Path(args.feed_state_out).write_bytes(feed_state.to_bytes())
    print(f"private feed enabled for {args.owner} at epoch {engine.current_epoch}")
    return 0


def cmd_recover(args, config: FeedConfig) -> int:
    feed_state = FeedState.from_bytes(Path(args.feed_state).read_bytes())
    grants = [Grant.from_bytes(Path(p).read_bytes()) for p in args.grants]
    events = [RekeyEvent.from_bytes(Path(p).read_bytes()) for p in args.events]
    engine = FeedKeyEngine.recover(
        feed_state, _identity_key(args), grants=grants, events=events, config=config,
    )
    _save_engine(args, engine)
    print(f"recovered feed of {engine.owner_id} at epoch {engine.current_epoch}, {len(engine.grants)} followers")
    return 0


def cmd_grant(args, config: FeedConfig) -> int:
    engine = _load_engine(args, config)
    grant = engine.grant(args.follower, _read_hex(args.follower_public))
    _save_engine(args, engine)
    Path(args.out).write_bytes(grant.to_bytes())
    print(f"granted {args.follower} slot {grant.slot}")
    return 0


def cmd_revoke(args, config: FeedConfig) -> int:
    engine = _load_engine(args, config)
    event = engine.revoke(args.follower)
    _save_engine(args, engine)
    Path(args.out).write_bytes(event.rekey.to_bytes())
    print(f"revoked {args.follower}: epoch {event.rekey.new_epoch}, {event.packet_count} packets")
    return 0


def cmd_encrypt_post(args, config: FeedConfig) -> int:
    engine = _load_engine(args, config)
    text = args.text if args.text is not None else sys.stdin.read()
    post = engine.encrypt_post(text, teaser=args.teaser)
    Path(args.out).write_bytes(post.to_bytes())
    print(f"encrypted post at epoch {post.epoch}")
    return 0


def cmd_follow(args, config: FeedConfig) -> int:
    grant = Grant.from_bytes(Path(args.grant).read_bytes())
    store = FollowerKeyStore(config=config)
    store.apply_grant(open_grant(grant, _identity_key(args)))
    _save_store(args, store)
    print(f"following with slot {store.slot} at epoch {store.epoch}")
    return 0


def cmd_apply_rekey(args, config: FeedConfig) -> int:
    store = _load_store(args, config)
    events = [RekeyEvent.from_bytes(Path(p).read_bytes()) for p in args.events]
    state = store.catch_up(events)
    _save_store(args, store)
    print(f"{state.value} at epoch {store.epoch}")
    return 0


def cmd_decrypt_post(args, config: FeedConfig) -> int:
    store = _load_store(args, config)
    post = EncryptedPost.from_bytes(Path(args.post).read_bytes())
    sys.stdout.write(store.decrypt_post(args.author, post).decode("utf-8"))
    return 0


def _add_identity_source(p: argparse.ArgumentParser) -> None:
    source = p.add_mutually_exclusive_group(required=True)
    source.add_argument("--private", help="Hex private key file")
    source.add_argument("--keyring", metavar="ACCOUNT", help="Load the private key from the OS keystore")


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="privfeed",
        description="Key management for private feeds on a public ledger.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--passphrase",
        default=None,
        help=f"Passphrase for sealed state files (default: ${PASSPHRASE_ENV} or prompt)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("keygen", help="Generate a secp256k1 identity key pair")
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument("--private-out", help="Write the private key as hex to this file")
    target.add_argument("--keyring", metavar="ACCOUNT", help="Store the private key in the OS keystore")
    p.add_argument("--public-out", required=True)
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("init", help="Enable a private feed")
    p.add_argument("--owner", required=True)
    p.add_argument("--owner-public", required=True, help="Hex public key file of the owner")
    p.add_argument("--state", required=True, help="Sealed owner state file to create")
    p.add_argument("--feed-state-out", required=True, help="Where to write the FeedState record")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("recover", help="Rebuild owner state from published records")
    p.add_argument("--feed-state", required=True, help="FeedState record of the feed")
    _add_identity_source(p)
    p.add_argument("--grant", dest="grants", action="append", default=[], help="Live Grant record (repeatable)")
    p.add_argument("--state", required=True, help="Sealed owner state file to write")
    p.add_argument("events", nargs="*", help="Every RekeyEvent record of the feed")
    p.set_defaults(func=cmd_recover)

    p = sub.add_parser("grant", help="Approve a follower")
    p.add_argument("--state", required=True)
    p.add_argument("--follower", required=True)
    p.add_argument("--follower-public", required=True)
    p.add_argument("--out", required=True, help="Where to write the Grant record")
    p.set_defaults(func=cmd_grant)

    p = sub.add_parser("revoke", help="Revoke a follower")
    p.add_argument("--state", required=True)
    p.add_argument("--follower", required=True)
    p.add_argument("--out", required=True, help="Where to write the RekeyEvent record")
    p.set_defaults(func=cmd_revoke)

    p = sub.add_parser("encrypt-post", help="Encrypt a post for the current epoch")
    p.add_argument("--state", required=True)
    p.add_argument("--text", default=None, help="Post text (default: read stdin)")
    p.add_argument("--teaser", default=None)
    p.add_argument("--out", required=True)
    p.set_defaults(func=cmd_encrypt_post)

    p = sub.add_parser("follow", help="Open a Grant into a sealed follower store")
    p.add_argument("--grant", required=True)
    _add_identity_source(p)
    p.add_argument("--store", required=True)
    p.set_defaults(func=cmd_follow)

    p = sub.add_parser("apply-rekey", help="Apply published rekey events to a follower store")
    p.add_argument("--store", required=True)
    p.add_argument("events", nargs="+")
    p.set_defaults(func=cmd_apply_rekey)

    p = sub.add_parser("decrypt-post", help="Decrypt a post with a follower store")
    p.add_argument("--store", required=True)
    p.add_argument("--author", required=True)
    p.add_argument("post")
    p.set_defaults(func=cmd_decrypt_post)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        config = FeedConfig.from_env()
        return args.func(args, config)
    except PrivateFeedError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except (OSError, RuntimeError, ValueError) as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
