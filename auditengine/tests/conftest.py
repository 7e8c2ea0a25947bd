"""Shared fixtures for the AuditEngine test suite."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import pytest

from auditengine.analyzer.parser.extractor import SymbolExtractor
from auditengine.core.config import Settings
from auditengine.core.types import (
    AuditConfiguration,
    AuditRequest,
    Finding,
    Location,
    ParsedData,
    Severity,
    SubmittedFile,
)
from auditengine.ingestion.preprocessor import Preprocessor
from auditengine.pipeline.store import InMemoryJobStore


# ── Sample projects ──────────────────────────────────────────────────────────

RUST_VAULT = """\
use anchor_lang::prelude::*;

#[program]
pub mod vault {
    use super::*;

    pub fn deposit(ctx: Context<Deposit>, amount: u64) -> Result<()> {
        require!(amount > 0, VaultError::ZeroAmount);
        let vault = &mut ctx.accounts.vault;
        vault.balance = vault.balance.checked_add(amount).unwrap();
        Ok(())
    }

    fn fee_for(amount: u64) -> u64 {
        amount / 100
    }
}

#[derive(Accounts)]
pub struct Deposit<'info> {
    #[account(mut)]
    pub vault: Account<'info, Vault>,
    pub user: Signer<'info>,
}

#[account]
pub struct Vault {
    pub balance: u64,
}
"""

CARGO_TOML = """\
[package]
name = "vault"
version = "0.1.0"

[dependencies]
anchor-lang = "0.29.0"
spl-token = { version = "4.0", features = ["no-entrypoint"] }
"""

MOVE_COIN_STORE = """\
module 0x1::coin_store {
    use std::signer;

    struct Balance has key {
        value: u64,
    }

    public fun deposit(account: &signer, amount: u64) acquires Balance {
        let addr = signer::address_of(account);
        let balance = borrow_global_mut<Balance>(addr);
        balance.value = balance.value + amount;
    }

    public entry fun withdraw_all(addr: address) acquires Balance {
        let Balance { value: _ } = move_from<Balance>(addr);
    }

    fun double(x: u64): u64 {
        x * 2
    }
}
"""

CAIRO_COUNTER = """\
#[starknet::contract]
mod counter {
    use starknet::get_caller_address;

    #[storage]
    struct Storage {
        count: u128,
    }

    #[external(v0)]
    fn increment(ref self: ContractState, amount: u128) {
        let current = self.count.read();
        self.count.write(current + amount);
    }
}
"""

# Minimal sources that trigger exactly one static finding each
OVERFLOW_SOURCE = """\
fn add(a: u64, b: u64) -> u64 {
    let x = a + b;
    x
}
"""

UNGUARDED_SOURCE = """\
pub fn set_fee(fee: u64) {
    config.fee = fee;
}
"""


# ── Builders ─────────────────────────────────────────────────────────────────


def build_request(
    files: dict[str, str],
    language: str = "rust",
    project_id: str = "proj-1",
    **configuration: Any,
) -> AuditRequest:
    return AuditRequest(
        project_id=project_id,
        project_name=project_id.title(),
        language=language,
        files=[SubmittedFile(file_name=name, content=content) for name, content in files.items()],
        configuration=AuditConfiguration(**configuration),
    )


def parse_project(files: dict[str, str], language: str = "rust") -> ParsedData:
    """Run preprocessing and extraction the way the pipeline does."""
    preprocessed = Preprocessor().process(build_request(files, language))
    return SymbolExtractor().parse(preprocessed)


def make_finding(
    id: str = "f-1",
    severity: Severity = Severity.MEDIUM,
    file: str = "src/lib.rs",
    line: int = 10,
    **fields: Any,
) -> Finding:
    fields.setdefault("title", f"Finding {id}")
    fields.setdefault("category", "Test")
    return Finding(id=id, severity=severity, location=Location(file=file, line=line), **fields)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        anthropic_api_key="",
        openai_api_key="",
        rules_config_path="",
        job_timeout_seconds=0,
        default_confidence_threshold=None,
        aggregator_deduplicate=False,
    )


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def request_factory() -> Callable[..., AuditRequest]:
    return build_request


@pytest.fixture
def rust_request() -> AuditRequest:
    return build_request(
        {"programs/vault/src/lib.rs": RUST_VAULT, "Cargo.toml": CARGO_TOML},
        language="Solana (Rust)",
        project_id="vault",
    )


@pytest.fixture
def rust_parsed() -> ParsedData:
    return parse_project({"src/lib.rs": RUST_VAULT, "Cargo.toml": CARGO_TOML})


@pytest.fixture
def move_parsed() -> ParsedData:
    return parse_project({"sources/coin_store.move": MOVE_COIN_STORE}, language="move")


@pytest.fixture
def cairo_parsed() -> ParsedData:
    return parse_project({"src/counter.cairo": CAIRO_COUNTER}, language="cairo")


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """setup_logging() replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
