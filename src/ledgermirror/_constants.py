"""Internal constants shared across the library."""

USER_AGENT = "ledgermirror/0.1"

# ------------------------------------------------------------------
# ERC-721 ABI fragments
# ------------------------------------------------------------------

TRANSFER_SIGNATURE = "Transfer(address,address,uint256)"

#: The slice of the ERC-721 ABI the mirror consumes.
ERC721_ABI: list[dict] = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "from", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "to", "type": "address"},
            {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
        ],
        "name": "Transfer",
        "type": "event",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalSupply",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# ------------------------------------------------------------------
# Pipeline defaults
# ------------------------------------------------------------------

DEFAULT_CHUNK_SIZE = 2000
DEFAULT_BACKFILL_ATTEMPTS = 3
DEFAULT_RETRY_CEILING = 3
DEFAULT_RECONCILE_INTERVAL = 3600.0
DEFAULT_SWEEP_INTERVAL = 300.0
