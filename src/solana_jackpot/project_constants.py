"""
Public rules of the jackpot round.

These values define how a round plays out and how the pot is split.
Changing them changes the odds or the payout and MUST be publicly announced.
"""

LAMPORTS_PER_SOL = 1_000_000_000

# Native SOL transfers are System Program instructions
SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"

# Round timing (milliseconds)
ROUND_DURATION_MS = 60_000
TICK_INTERVAL_MS = 100
GRACE_PERIOD_MS = 15_000

# Payout
PLATFORM_FEE_RATE = 0.025
FEE_RESERVE_LAMPORTS = 5_000  # one signature at the base fee

# Deposit verification
AMOUNT_TOLERANCE_SOL = 0.001
SETTLE_DELAY_S = 2.0
VERIFY_ATTEMPTS = 3
VERIFY_RETRY_DELAY_S = 3.0
COMMITMENT_LADDER = ("finalized", "confirmed", "processed")

# Entries whose transfer id starts with this skip on-chain verification
SIMULATION_PREFIX = "simulated_"
