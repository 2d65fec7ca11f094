from decimal import Decimal

from domain.holdings import RESERVE_SYMBOL

BTC = "BTC"
ETH = "ETH"
SOL = "SOL"
USDT = RESERVE_SYMBOL

ALICE = "alice"
BOB = "bob"
CAROL = "carol"
CLUB = "club-1"

STARTING_BALANCE = Decimal("100000")
