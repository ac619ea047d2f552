from __future__ import annotations

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, conint

class _Base(BaseModel):
    class Config:
        extra = "ignore"

class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")

# ---------- transfer planning ----------
class PlanReq(_Base):
    sender_owner: str = Field(..., description="Sender wallet / transfer authority (base58).")
    sender_token_account: str = Field(..., description="Sender Token-2022 account (base58).")
    recipient_token_account: str = Field(..., description="Recipient Token-2022 account (base58).")
    mint: str = Field(..., description="Confidential mint (base58).")
    recipient_elgamal_pubkey: str = Field(..., description="Recipient ElGamal pubkey (base64, 32 bytes).")
    auditor_elgamal_pubkey: Optional[str] = Field(None, description="Mint auditor ElGamal pubkey (base64), if any.")
    amount: int = Field(..., description="Transfer amount in base units.")
    available_balance: int = Field(..., description="Decrypted available balance in base units.")
    current_available_ciphertext: str = Field(..., description="On-chain available-balance ciphertext (base64, 64 bytes).")
    proof_bundle: Dict[str, Any] = Field(..., description="Externally generated proofs (see BundleFileOracle).")
    rent_lamports: Optional[Dict[str, conint(ge=0)]] = Field(
        None, description="Rent per context kind (equality/validity/range); queried from RPC when omitted."
    )

class StepInfo(_Base):
    index: int
    total: int
    label: str
    compute_unit_limit: Optional[int] = None
    extra_signers: List[str] = Field(default_factory=list, description="Co-signers besides the sender (base58).")
    instruction_data_sizes: List[int]
    serialized_size: int = Field(..., description="Bytes on the wire with every signature slot filled.")

class ContextInfo(_Base):
    kind: str
    address: str
    byte_size: int
    rent_lamports: int

class PlanRes(Ok):
    plan_id: str
    steps: List[StepInfo]
    contexts: List[ContextInfo]
    total_rent_lamports: int = Field(..., description="Lamports locked in context accounts until step 5 closes them.")
    max_transaction_size: int

# ---------- recovery ----------
class StrandedItem(_Base):
    address: str
    run_id: str
    kind: str
    authority: str
    rent_lamports: int
    state: str
    uncertain: bool = Field(False, description="Creating step timed out; the account may or may not exist.")

class StrandedRes(Ok):
    accounts: List[StrandedItem]
    total_rent_lamports: int
