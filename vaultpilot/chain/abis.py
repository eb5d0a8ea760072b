"""Minimal ABIs for the vault and the underlying GMX vault."""

# Fixed-point scales used by the contracts
USD_DECIMALS = 30      # GMX sizes and prices
USDC_DECIMALS = 6      # vault balances and collateral
NATIVE_DECIMALS = 18   # execution fee (wei)

_POSITION_COMPONENTS = [
    {"name": "isActive", "type": "bool"},
    {"name": "isLong", "type": "bool"},
    {"name": "token", "type": "address"},
    {"name": "collateral", "type": "uint256"},
    {"name": "size", "type": "uint256"},
    {"name": "leverage", "type": "uint256"},
    {"name": "entryPrice", "type": "uint256"},
    {"name": "stopLoss", "type": "uint256"},
    {"name": "takeProfit", "type": "uint256"},
    {"name": "timestamp", "type": "uint256"},
    {"name": "requestKey", "type": "bytes32"},
    {"name": "highestPrice", "type": "uint256"},
    {"name": "lowestPrice", "type": "uint256"},
    {"name": "trailingSlBps", "type": "uint256"},
    {"name": "trailingActivated", "type": "bool"},
    {"name": "autoFeaturesEnabled", "type": "bool"},
]


def _token_call(name: str, payable: bool) -> dict:
    return {
        "inputs": [{"name": "token", "type": "address"}],
        "name": name,
        "outputs": [],
        "stateMutability": "payable" if payable else "nonpayable",
        "type": "function",
    }


VAULT_ABI = [
    {
        "inputs": [{"name": "user", "type": "address"}],
        "name": "balances",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "token", "type": "address"},
        ],
        "name": "getPosition",
        "outputs": [{"components": _POSITION_COMPONENTS, "name": "", "type": "tuple"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getExecutionFee",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    _token_call("userClosePosition", payable=True),
    _token_call("cancelAutoFeatures", payable=False),
    _token_call("userInstantClose", payable=True),
]

GMX_VAULT_ABI = [
    {
        "inputs": [
            {"name": "_account", "type": "address"},
            {"name": "_collateralToken", "type": "address"},
            {"name": "_indexToken", "type": "address"},
            {"name": "_isLong", "type": "bool"},
        ],
        "name": "getPosition",
        "outputs": [
            {"name": "size", "type": "uint256"},
            {"name": "collateral", "type": "uint256"},
            {"name": "averagePrice", "type": "uint256"},
            {"name": "entryFundingRate", "type": "uint256"},
            {"name": "reserveAmount", "type": "uint256"},
            {"name": "realisedPnl", "type": "int256"},
            {"name": "lastIncreasedTime", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "_token", "type": "address"}],
        "name": "getMaxPrice",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "_token", "type": "address"}],
        "name": "getMinPrice",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]
