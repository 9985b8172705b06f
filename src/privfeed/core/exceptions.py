"""
Exceptions for privfeed
Every error the key engine surfaces derives from PrivateFeedError so callers
have a single catch point. The set is closed; nothing wraps arbitrary causes.
"""


class PrivateFeedError(Exception):
    # general container for errors
    pass


class CapacityExceededError(PrivateFeedError):
    # raised when no free leaf slot is left in the key tree
    pass


class UnknownFollowerError(PrivateFeedError):
    # raised on revoke / lookup of an identity that holds no slot
    pass


class EpochOutOfRangeError(PrivateFeedError):
    # raised when the epoch counter is exhausted or forward derivation is asked for
    pass


class StaleEpochError(PrivateFeedError):
    # raised when rekey events are applied out of order
    pass


class DecryptionFailure(PrivateFeedError):
    # raised on AEAD tag mismatch: wrong key, corrupted data or a locked-out reader
    pass


class KeyNotFoundError(PrivateFeedError):
    # raised when a follower holds no key for the requested epoch
    pass


class MalformedBundleError(PrivateFeedError):
    # raised when a grant / rekey / post record fails to parse
    pass
