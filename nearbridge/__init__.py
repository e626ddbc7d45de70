"""
NEARBRIDGE: natural ETH to NEAR transfer client

Client-side state machine for locking ether on Ethereum and minting its
bridged NEP-141 counterpart on NEAR through the Rainbow Bridge.

Module Index
────────────

    send_to_near.py    Transfer state machine (lock, sync, mint)
    transfer.py        Immutable transfer value and its persisted form
    replacement.py     Locating dropped and replaced lock transactions
    confirmations.py   Light client confirmation depth and throttling
    proof.py           Inclusion proof building and replay check
    redirect.py        Wallet redirect channel
    metadata.py        Cached ERC-20 metadata
    chain.py           Chain protocols and in-memory mock chains
    config.py          YAML and environment configuration
    observability.py   Structured logging and correlation ids
    cli.py             Operator command line
"""

__version__ = "0.1.0"

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import NEARBRIDGE modules on first access."""

    # State machine exports
    if name in ("SendToNear", "BackgroundScheduler", "WrongNetworkError",
                "TRANSFER_TYPE", "SOURCE_NETWORK", "DESTINATION_NETWORK",
                "describe_failure"):
        from nearbridge import send_to_near
        return getattr(send_to_near, name)

    # Transfer exports
    if name in ("Transfer", "TransferStatus", "Step", "EthCache",
                "TransferStateError", "TransferDecodeError",
                "to_minor_units", "format_minor_units"):
        from nearbridge import transfer
        return getattr(transfer, name)

    # Replacement exports
    if name in ("find_replacement_tx", "get_transaction_by_nonce", "validate_replacement",
                "TransactionQuery", "EventExpectation", "SearchError", "TxValidationError"):
        from nearbridge import replacement
        return getattr(replacement, name)

    # Redirect exports
    if name in ("InMemoryRedirectChannel", "FileRedirectChannel", "RedirectMessage",
                "RedirectChannelError"):
        from nearbridge import redirect
        return getattr(redirect, name)

    # Metadata exports
    if name in ("TokenMetadata", "MetadataCache", "Erc20Data"):
        from nearbridge import metadata
        return getattr(metadata, name)

    # Config exports
    if name in ("BridgeConfig", "ConfigManager", "ConfigError", "get_config",
                "get_config_manager"):
        from nearbridge import config
        return getattr(config, name)

    raise AttributeError(f"module 'nearbridge' has no attribute '{name}'")
