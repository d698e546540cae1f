from typing import NamedTuple
from hathor import (
    Address,
    Blueprint,
    Context,
    NCDepositAction,
    NCWithdrawalAction,
    NCFail,
    TokenUid,
    export,
    public,
    view,
)

#
# === AGENT ESCROW BLUEPRINT ===
#
# Three-party escrow nano-contract (buyer, seller, agent) with owner-managed access control.
#
# Features:
# - Owner-managed allow-list of escrow agents
# - Blacklist of banned addresses (blacklisting revokes agent approval and validation)
# - Lazily built registry of validated addresses
# - Buyer-funded escrows: amount + fee deposited into custody at creation
# - Completion (buyer or agent) releases amount to seller and fee to the fee beneficiary
# - Cancellation (any party) refunds amount + fee to the buyer
# - Pull-based withdrawals of released funds and accumulated fees
#
# === FEE CONSTANTS ===
#

MAX_ESCROW_FEE_BPS = 1000  # 10.00%
BPS_DENOMINATOR = 10000


#
# === STATUS CONSTANTS ===
#

STATUS_PENDING = 0      # funds in custody, waiting for completion or cancellation
STATUS_COMPLETED = 1    # terminal: amount released to seller, fee to beneficiary
STATUS_CANCELED = 2     # terminal: amount + fee refunded to buyer
STATUS_NOT_FOUND = -1   # view-only marker


#
# === VIEW RETURN TYPES (JSON-friendly) ===
#

class EscrowRecordView(NamedTuple):
    buyer: str          # base58 string, "" if not found
    seller: str
    agent: str
    amount: int
    fee: int
    status: int         # -1 means "escrow not found"
    created_at: int
    completed_at: int   # 0 while unset
    canceled_at: int    # 0 while unset


class ConfigView(NamedTuple):
    owner: str
    token_uid: str      # token uid hex
    escrow_fee_bps: int
    max_escrow_fee_bps: int


class FeeQuoteView(NamedTuple):
    amount: int
    fee: int
    total: int          # amount + fee, the deposit create_escrow expects


class CountersView(NamedTuple):
    total_escrows: int
    count_pending: int
    count_completed: int
    count_canceled: int
    locked_total: int
    fee_balance: int


#
# === CUSTOM FAIL TYPES ===
#

class EscrowError(NCFail):
    """Base class for escrow-related failures."""


class NotAuthorized(EscrowError):
    """Caller lacks permission for this operation."""


class AlreadyInitialized(EscrowError):
    """Contract storage was already initialized."""


class NotInitialized(EscrowError):
    """Contract storage has not been initialized."""


class InvalidAmount(EscrowError):
    """Amount, fee rate or action shape is out of bounds."""


class InsufficientFunds(EscrowError):
    """Deposited or claimable value does not cover the operation."""


class AlreadyCompleted(EscrowError):
    """Escrow has already been completed."""


class AlreadyCanceled(EscrowError):
    """Escrow has already been canceled."""


class WrongState(EscrowError):
    """Escrow is missing or not in a state that allows the operation."""


class InvalidSeller(EscrowError):
    """Seller address cannot take part in an escrow."""


class InvalidAgent(EscrowError):
    """Agent is not on the approved agents list."""


class SameParty(EscrowError):
    """Buyer, seller and agent must be pairwise distinct."""


class InvalidPrincipal(EscrowError):
    """Address equals the caller or the contract owner."""


class InvalidAddress(EscrowError):
    """Address is reserved, blacklisted or not registered."""


class Blacklisted(EscrowError):
    """Caller is blacklisted."""


class NullPrincipal(EscrowError):
    """Caller identity is not an address."""


@export
class AgentEscrow(Blueprint):
    """
    Three-party escrow guarded by an owner-managed access registry.

    Identity model:
      - owner: caller identity at initialize(), changed only by transfer_ownership()
      - buyer: caller identity at create_escrow()
      - seller / agent: explicit arguments to create_escrow()

    Validation model:
      - reserved addresses (caller, owner, this contract) are never registry targets
      - every registry write and every escrow party goes through the validation chain
      - blacklisting drops the address from approved_agents and validated

    Custody model:
      - create_escrow() deposits amount + fee of token_uid into the contract
      - complete/cancel move value from locked_total into claimable balances
      - parties and the owner pull released value with withdraw()/withdraw_fees()
    """

    # === Configuration ===
    contract_owner: Address
    escrow_fee_bps: int
    token_uid: TokenUid

    # === Access registry ===
    approved_agents: set[Address]
    blacklisted: set[Address]
    validated: set[Address]

    # === Escrow ledger ===
    escrow_counter: int
    buyers: dict[int, Address]
    sellers: dict[int, Address]
    agents: dict[int, Address]
    amounts: dict[int, int]
    fees: dict[int, int]
    statuses: dict[int, int]
    created_at: dict[int, int]
    completed_at: dict[int, int]
    canceled_at: dict[int, int]

    # === Custody accounting ===
    locked_total: int
    claimable: dict[Address, int]
    fee_balance: int

    # === Counters ===
    count_pending: int
    count_completed: int
    count_canceled: int

    #
    # === INITIALIZE ===
    #

    @public
    def initialize(self, ctx: Context, token_uid: TokenUid, escrow_fee_bps: int) -> None:
        """
        Initializes contract storage and configuration.

        The caller becomes the contract owner. All escrows of this instance
        are denominated in token_uid.
        """
        owner = self._get_caller_id(ctx)
        self._validate_fee_bps(escrow_fee_bps)

        self.contract_owner = owner
        self.escrow_fee_bps = escrow_fee_bps
        self.token_uid = token_uid

        self.approved_agents = set()
        self.blacklisted = set()
        self.validated = set()

        self.escrow_counter = 0
        self.buyers = {}
        self.sellers = {}
        self.agents = {}
        self.amounts = {}
        self.fees = {}
        self.statuses = {}
        self.created_at = {}
        self.completed_at = {}
        self.canceled_at = {}

        self.locked_total = 0
        self.claimable = {}
        self.fee_balance = 0

        self.count_pending = 0
        self.count_completed = 0
        self.count_canceled = 0

    #
    # === INTERNAL HELPERS ===
    #

    def _get_caller_id(self, ctx: Context) -> Address:
        """Returns the caller identity (CallerID)."""
        caller = ctx.get_caller_address()
        if caller is None:
            raise NullPrincipal("Caller identity is not an address")
        return caller

    def _only_owner(self, ctx: Context) -> Address:
        caller = self._get_caller_id(ctx)
        if caller != self.contract_owner:
            raise NotAuthorized("Only the contract owner can perform this operation")
        return caller

    def _validate_fee_bps(self, fee_bps: int) -> None:
        if fee_bps < 0 or fee_bps > MAX_ESCROW_FEE_BPS:
            raise InvalidAmount("escrow_fee_bps out of bounds")

    def _floor_fee(self, amount: int) -> int:
        """Floor(amount * bps / 10_000) using integer math."""
        return (amount * self.escrow_fee_bps) // BPS_DENOMINATOR

    def _inc_status_counter(self, status: int, delta: int) -> None:
        if status == STATUS_PENDING:
            self.count_pending += delta
        elif status == STATUS_COMPLETED:
            self.count_completed += delta
        elif status == STATUS_CANCELED:
            self.count_canceled += delta

    def _set_status(self, escrow_id: int, new_status: int) -> None:
        """Set escrow status and keep counters consistent."""
        old_status = self.statuses.get(escrow_id)
        if old_status is not None:
            self._inc_status_counter(old_status, -1)
        self.statuses[escrow_id] = new_status
        self._inc_status_counter(new_status, 1)

    #
    # === PRINCIPAL VALIDATOR ===
    #
    # Pure checks over an explicit caller. Only _register_validated writes state.
    #

    def _validate_principal(self, addr: Address, caller: Address) -> None:
        if addr == caller:
            raise InvalidPrincipal("Address must differ from the caller")
        if addr == self.contract_owner:
            raise InvalidPrincipal("Address must differ from the contract owner")

    def _is_contract_address(self, addr: Address) -> bool:
        # The custodial identity is a ContractId; an Address argument never equals it,
        # so this branch only matters if the runtime ever hands contract ids in as Address.
        return addr == self.syscall.get_contract_id()

    def _is_reserved_address(self, addr: Address, caller: Address) -> bool:
        return addr == caller or addr == self.contract_owner or self._is_contract_address(addr)

    def _require_not_reserved(self, addr: Address, caller: Address) -> None:
        if self._is_reserved_address(addr, caller):
            raise InvalidAddress("Reserved address")

    def _is_not_blacklisted(self, addr: Address, caller: Address) -> bool:
        self._require_not_reserved(addr, caller)
        return addr not in self.blacklisted

    def _is_whitelisted(self, addr: Address, caller: Address) -> bool:
        self._require_not_reserved(addr, caller)
        return addr in self.validated

    def _is_valid_address(self, addr: Address, caller: Address) -> bool:
        return self._is_not_blacklisted(addr, caller)

    def _require_valid_address(self, addr: Address, caller: Address) -> None:
        if not self._is_valid_address(addr, caller):
            raise InvalidAddress("Address is blacklisted")

    def _register_validated(self, addr: Address, caller: Address) -> None:
        self._require_valid_address(addr, caller)
        self.validated.add(addr)

    def _check_candidate(self, addr: Address, caller: Address) -> None:
        """validate_principal + not reserved, the entry gate for any address argument."""
        self._validate_principal(addr, caller)
        self._require_not_reserved(addr, caller)

    def _are_distinct(self, p1: Address, p2: Address, p3: Address, caller: Address) -> bool:
        self._check_candidate(p2, caller)
        self._check_candidate(p3, caller)
        return p1 != p2 and p1 != p3 and p2 != p3

    #
    # === ADMIN CONTROL (OWNER-ONLY) ===
    #

    @public
    def add_approved_agent(self, ctx: Context, addr: Address) -> bool:
        """Owner-only: approve addr as an escrow agent (registers it as validated)."""
        caller = self._only_owner(ctx)
        self._check_candidate(addr, caller)
        self._register_validated(addr, caller)
        self.approved_agents.add(addr)
        return True

    @public
    def remove_approved_agent(self, ctx: Context, addr: Address) -> bool:
        """Owner-only: revoke agent approval and validation of a whitelisted addr."""
        caller = self._only_owner(ctx)
        self._check_candidate(addr, caller)
        if not self._is_whitelisted(addr, caller):
            raise InvalidAddress("Address is not whitelisted")
        self.validated.discard(addr)
        self.approved_agents.discard(addr)
        return True

    @public
    def blacklist_address(self, ctx: Context, addr: Address) -> bool:
        """Owner-only: ban addr from every role."""
        caller = self._only_owner(ctx)
        self._check_candidate(addr, caller)
        self._require_valid_address(addr, caller)
        self.validated.discard(addr)
        self.approved_agents.discard(addr)
        self.blacklisted.add(addr)
        return True

    @public
    def set_escrow_fee(self, ctx: Context, new_fee_bps: int) -> bool:
        """Owner-only: update the escrow fee rate (basis points, capped at 10%)."""
        self._only_owner(ctx)
        self._validate_fee_bps(new_fee_bps)
        self.escrow_fee_bps = new_fee_bps
        return True

    @public
    def transfer_ownership(self, ctx: Context, new_owner: Address) -> bool:
        """Owner-only: hand the contract over to a valid, non-reserved address."""
        caller = self._only_owner(ctx)
        self._check_candidate(new_owner, caller)
        self._register_validated(new_owner, caller)
        self.contract_owner = new_owner
        return True

    #
    # === ESCROW LIFECYCLE: CREATE (BUYER = CALLERID) ===
    #

    def _require_custody_deposit(self, ctx: Context, total: int) -> None:
        """Validate that this call deposits exactly total of token_uid."""
        action_tokens = set(ctx.actions.keys())
        if not action_tokens:
            raise InsufficientFunds("Escrow deposit is missing")
        if action_tokens != {self.token_uid}:
            raise InvalidAmount("Deposit must include exactly the escrow token")

        action = ctx.get_single_action(self.token_uid)
        if not isinstance(action, NCDepositAction):
            raise InvalidAmount("Escrow funding must be a deposit")
        if action.amount < total:
            raise InsufficientFunds("Deposit does not cover amount + fee")
        if action.amount > total:
            raise InvalidAmount("Deposit exceeds amount + fee")

    @public(allow_deposit=True)
    def create_escrow(self, ctx: Context, seller: Address, agent: Address, amount: int) -> int:
        """
        Open a PENDING escrow funded by the caller (buyer).

        Checks run in order and the first failure aborts the call:
          1. seller and agent pass validate_principal and are not reserved
          2. both are valid (not blacklisted) and get registered as validated
          3. agent is an approved agent
          4. buyer, seller and agent are pairwise distinct
          5. amount > 0
        The call must deposit exactly amount + floor(amount * fee_bps / 10_000).
        """
        buyer = self._get_caller_id(ctx)

        self._check_candidate(seller, buyer)
        self._check_candidate(agent, buyer)

        self._register_validated(seller, buyer)
        self._register_validated(agent, buyer)

        if agent not in self.approved_agents:
            raise InvalidAgent("Agent is not approved")

        if not self._are_distinct(buyer, seller, agent, buyer):
            raise SameParty("Buyer, seller and agent must be different identities")

        if amount <= 0:
            raise InvalidAmount("Escrow amount must be > 0")

        fee = self._floor_fee(amount)
        total = amount + fee
        self._require_custody_deposit(ctx, total)

        escrow_id = self.escrow_counter + 1
        self.buyers[escrow_id] = buyer
        self.sellers[escrow_id] = seller
        self.agents[escrow_id] = agent
        self.amounts[escrow_id] = amount
        self.fees[escrow_id] = fee
        self.created_at[escrow_id] = ctx.block.timestamp
        self.completed_at[escrow_id] = 0
        self.canceled_at[escrow_id] = 0
        self._set_status(escrow_id, STATUS_PENDING)

        self.escrow_counter = escrow_id
        self.locked_total += total
        return escrow_id

    #
    # === ESCROW LIFECYCLE: COMPLETE / CANCEL ===
    #

    def _assert_exists(self, escrow_id: int) -> None:
        if escrow_id <= 0 or escrow_id > self.escrow_counter:
            raise WrongState("Escrow ID does not exist")

    def _credit(self, addr: Address, amount: int) -> None:
        if amount > 0:
            self.claimable[addr] = self.claimable.get(addr, 0) + amount

    @public
    def complete_escrow(self, ctx: Context, escrow_id: int) -> bool:
        """Buyer or agent: release amount to the seller and fee to the fee beneficiary."""
        self._assert_exists(escrow_id)

        caller = self._get_caller_id(ctx)
        if caller != self.buyers[escrow_id] and caller != self.agents[escrow_id]:
            raise NotAuthorized("Only buyer or agent can complete this escrow")

        status = self.statuses[escrow_id]
        if status == STATUS_COMPLETED:
            raise AlreadyCompleted("Escrow has already been completed")
        if status != STATUS_PENDING:
            raise WrongState("Escrow is not pending")

        amount = self.amounts[escrow_id]
        fee = self.fees[escrow_id]

        self._credit(self.sellers[escrow_id], amount)
        self.fee_balance += fee
        self.locked_total -= amount + fee

        self._set_status(escrow_id, STATUS_COMPLETED)
        self.completed_at[escrow_id] = ctx.block.timestamp
        return True

    @public
    def cancel_escrow(self, ctx: Context, escrow_id: int) -> bool:
        """Buyer, seller or agent: refund amount + fee to the buyer."""
        self._assert_exists(escrow_id)

        caller = self._get_caller_id(ctx)
        buyer = self.buyers[escrow_id]
        if caller not in (buyer, self.sellers[escrow_id], self.agents[escrow_id]):
            raise NotAuthorized("Only buyer, seller or agent can cancel this escrow")

        status = self.statuses[escrow_id]
        if status == STATUS_CANCELED:
            raise AlreadyCanceled("Escrow has already been canceled")
        if status != STATUS_PENDING:
            raise WrongState("Escrow is not pending")

        total = self.amounts[escrow_id] + self.fees[escrow_id]
        self._credit(buyer, total)
        self.locked_total -= total

        self._set_status(escrow_id, STATUS_CANCELED)
        self.canceled_at[escrow_id] = ctx.block.timestamp
        return True

    #
    # === WITHDRAWALS (RELEASED FUNDS + FEES) ===
    #

    def _process_withdraw(self, ctx: Context, expected_amount: int) -> None:
        """Validate that this call withdraws exactly expected_amount of token_uid."""
        if set(ctx.actions.keys()) != {self.token_uid}:
            raise InvalidAmount("Withdraw must operate on exactly the escrow token")

        action = ctx.get_single_action(self.token_uid)
        if not isinstance(action, NCWithdrawalAction):
            raise InvalidAmount("Expected a withdrawal action")
        if action.amount != expected_amount:
            raise InvalidAmount("Incorrect withdrawal amount")

    @public(allow_withdrawal=True)
    def withdraw(self, ctx: Context) -> None:
        """Caller withdraws its whole claimable balance."""
        caller = self._get_caller_id(ctx)
        balance = self.claimable.get(caller, 0)
        if balance <= 0:
            raise InsufficientFunds("Nothing to withdraw")

        self._process_withdraw(ctx, balance)
        del self.claimable[caller]

    @public(allow_withdrawal=True)
    def withdraw_fees(self, ctx: Context) -> None:
        """Owner-only: withdraw all accumulated escrow fees."""
        self._only_owner(ctx)
        balance = self.fee_balance
        if balance <= 0:
            raise InsufficientFunds("No fees available")

        self._process_withdraw(ctx, balance)
        self.fee_balance = 0

    #
    # === VIEWS: PRINCIPAL VALIDATOR ===
    #
    # @view cannot access Context, so the caller identity is passed explicitly.
    #

    @view
    def validate_principal(self, addr: Address, caller: Address) -> bool:
        """Return True, or fail with InvalidPrincipal if addr is the caller or the owner."""
        self._validate_principal(addr, caller)
        return True

    @view
    def is_contract_address(self, addr: Address) -> bool:
        return self._is_contract_address(addr)

    @view
    def is_reserved_address(self, addr: Address, caller: Address) -> bool:
        return self._is_reserved_address(addr, caller)

    @view
    def is_not_blacklisted(self, addr: Address, caller: Address) -> bool:
        return self._is_not_blacklisted(addr, caller)

    @view
    def is_whitelisted(self, addr: Address, caller: Address) -> bool:
        return self._is_whitelisted(addr, caller)

    @view
    def is_valid_address(self, addr: Address, caller: Address) -> bool:
        return self._is_valid_address(addr, caller)

    @view
    def are_distinct(self, p1: Address, p2: Address, p3: Address, caller: Address) -> bool:
        return self._are_distinct(p1, p2, p3, caller)

    #
    # === VIEWS: ACCESS REGISTRY (raw membership) ===
    #

    @view
    def is_approved_agent(self, addr: Address) -> bool:
        return addr in self.approved_agents

    @view
    def is_blacklisted(self, addr: Address) -> bool:
        return addr in self.blacklisted

    @view
    def is_validated(self, addr: Address) -> bool:
        return addr in self.validated

    #
    # === VIEWS: CONFIG / LEDGER / CUSTODY ===
    #

    @view
    def get_config(self) -> ConfigView:
        return ConfigView(
            owner=str(self.contract_owner),
            token_uid=self.token_uid.hex(),
            escrow_fee_bps=self.escrow_fee_bps,
            max_escrow_fee_bps=MAX_ESCROW_FEE_BPS,
        )

    @view
    def get_fee_quote(self, amount: int) -> FeeQuoteView:
        """Quote the fee and required deposit for a hypothetical amount (base units)."""
        if amount <= 0:
            raise InvalidAmount("Escrow amount must be > 0")
        fee = self._floor_fee(amount)
        return FeeQuoteView(amount=amount, fee=fee, total=amount + fee)

    @view
    def get_escrow(self, escrow_id: int) -> EscrowRecordView:
        """Safe, JSON-friendly view of an escrow record."""
        buyer = self.buyers.get(escrow_id)
        if buyer is None:
            return EscrowRecordView(
                buyer="",
                seller="",
                agent="",
                amount=0,
                fee=0,
                status=STATUS_NOT_FOUND,
                created_at=0,
                completed_at=0,
                canceled_at=0,
            )

        return EscrowRecordView(
            buyer=str(buyer),
            seller=str(self.sellers[escrow_id]),
            agent=str(self.agents[escrow_id]),
            amount=self.amounts[escrow_id],
            fee=self.fees[escrow_id],
            status=self.statuses[escrow_id],
            created_at=self.created_at[escrow_id],
            completed_at=self.completed_at[escrow_id],
            canceled_at=self.canceled_at[escrow_id],
        )

    @view
    def get_escrow_exists(self, escrow_id: int) -> bool:
        return self.buyers.get(escrow_id) is not None

    @view
    def get_escrow_status(self, escrow_id: int) -> int:
        """Return escrow status, or -1 if escrow not found."""
        return self.statuses.get(escrow_id, STATUS_NOT_FOUND)

    @view
    def get_escrow_count(self) -> int:
        return self.escrow_counter

    @view
    def get_claimable_balance(self, addr: Address) -> int:
        return self.claimable.get(addr, 0)

    @view
    def get_fee_balance(self) -> int:
        return self.fee_balance

    @view
    def get_locked_total(self) -> int:
        return self.locked_total

    @view
    def get_counters(self) -> CountersView:
        """Return lightweight counters suitable for dashboards."""
        return CountersView(
            total_escrows=self.escrow_counter,
            count_pending=self.count_pending,
            count_completed=self.count_completed,
            count_canceled=self.count_canceled,
            locked_total=self.locked_total,
            fee_balance=self.fee_balance,
        )
