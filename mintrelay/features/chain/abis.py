"""ABI fragments for the contracts the relay core touches.

Only the functions and events actually called are listed.
"""


def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


SUBSCRIPTION_MANAGER_ABI = [
    _fn(
        "getSubscription",
        [("user", "address")],
        [
            ("plan", "uint8"),
            ("expiresAt", "uint256"),
            ("nftsMinted", "uint256"),
            ("nftLimit", "uint256"),
            ("isActive", "bool"),
            ("hasGaslessMinting", "bool"),
            ("autoRenew", "bool"),
        ],
        "view",
    ),
    _fn("canUserMint", [("user", "address"), ("amount", "uint256")], [("", "bool")], "view"),
    _fn("subscribeToFreePlanForUser", [("user", "address")]),
    _fn("subscribeToPlanForUser", [("user", "address"), ("plan", "uint8"), ("autoRenew", "bool")]),
    _fn(
        "subscribeToPlanWithPermit",
        [
            ("user", "address"),
            ("plan", "uint8"),
            ("autoRenew", "bool"),
            ("deadline", "uint256"),
            ("v", "uint8"),
            ("r", "bytes32"),
            ("s", "bytes32"),
        ],
    ),
    _fn("downgradeSubscriptionForUser", [("user", "address"), ("newPlan", "uint8")]),
]

# Older managers only expose the six-field getSubscription and no autoRenew.
SUBSCRIPTION_MANAGER_LEGACY_ABI = [
    _fn(
        "getSubscription",
        [("user", "address")],
        [
            ("plan", "uint8"),
            ("expiresAt", "uint256"),
            ("nftsMinted", "uint256"),
            ("nftLimit", "uint256"),
            ("isActive", "bool"),
            ("hasGaslessMinting", "bool"),
        ],
        "view",
    ),
]

STABLE_TOKEN_ABI = [
    _fn("balanceOf", [("account", "address")], [("", "uint256")], "view"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")], "view"),
    _fn("nonces", [("owner", "address")], [("", "uint256")], "view"),
    _fn("decimals", [], [("", "uint8")], "view"),
]

COLLECTION_FACTORY_ABI = [
    _fn(
        "createCollectionFor",
        [
            ("artist", "address"),
            ("name", "string"),
            ("symbol", "string"),
            ("description", "string"),
            ("image", "string"),
            ("externalUrl", "string"),
            ("royaltyRecipient", "address"),
            ("royaltyBPS", "uint96"),
        ],
        [("collection", "address")],
    ),
    _fn(
        "mintNFTFor",
        [("collection", "address"), ("to", "address"), ("tokenURI", "string")],
        [("tokenId", "uint256")],
    ),
    _fn("getTotalCollections", [], [("", "uint256")], "view"),
    _fn("totalCollections", [], [("", "uint256")], "view"),
    _event(
        "CollectionCreated",
        [("collection", "address", True), ("artist", "address", True), ("name", "string", False)],
    ),
]

CLAIMABLE_FACTORY_ABI = [
    _fn(
        "deployClaimableNFT",
        [("name", "string"), ("symbol", "string"), ("baseTokenURI", "string"), ("collectionOwner", "address")],
        [("nftAddress", "address")],
    ),
    _fn("getDeployedContracts", [], [("", "address[]")], "view"),
    _event(
        "ClaimableNFTDeployed",
        [("nftContract", "address", True), ("owner", "address", True), ("name", "string", False)],
    ),
]

CLAIMABLE_NFT_ABI = [
    _fn(
        "addClaimCode",
        [
            ("claimCode", "string"),
            ("maxClaims", "uint256"),
            ("startTime", "uint256"),
            ("endTime", "uint256"),
            ("metadataURI", "string"),
        ],
    ),
    _fn(
        "validateClaimCode",
        [("claimCode", "string"), ("user", "address")],
        [("valid", "bool"), ("message", "string")],
        "view",
    ),
    _fn("ownerMint", [("to", "address"), ("metadataURI", "string")], [("", "uint256")]),
    _fn("owner", [], [("", "address")], "view"),
]
