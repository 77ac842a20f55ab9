"""
Unit tests for authorization codes and PKCE (social_mcp/codes.py).

Each test targets one redemption check so a failure points straight at the
step that broke. Time is injected through a fake clock, so expiry is tested
without sleeping.
"""

import asyncio
import base64
import hashlib
import logging
import threading

import pytest

from social_mcp.codes import CodeEngine, GrantError, compute_challenge
from social_mcp.logging_config import preview

VERIFIER = "dBjftJeZ4CVP-mJ92K9CO-5d1IH8WxXyMbXGbakcDvh9LbM6gm6NgSMQnB2IqtnN"
S256_CHALLENGE = (
    base64.urlsafe_b64encode(hashlib.sha256(VERIFIER.encode()).digest()).decode().rstrip("=")
)
REDIRECT = "http://127.0.0.1:33418/callback"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    return CodeEngine(ttl_seconds=600, sweep_interval_seconds=0.01, clock=clock)


def issue(engine, challenge=S256_CHALLENGE, method="S256", key="sk_soc_abc") -> str:
    return engine.issue(
        client_id="client_1",
        redirect_uri=REDIRECT,
        code_challenge=challenge,
        code_challenge_method=method,
        api_key=key,
        scope="mcp:tools",
    )


class TestComputeChallenge:
    def test_s256_is_unpadded_base64url_sha256(self):
        challenge = compute_challenge(VERIFIER, "S256")

        assert challenge == S256_CHALLENGE
        assert len(challenge) == 43
        assert "=" not in challenge

    def test_plain_is_identity(self):
        assert compute_challenge(VERIFIER, "plain") == VERIFIER


class TestRedeem:
    """Tests for CodeEngine.redeem()."""

    # ----- Happy path -----

    def test_s256_redeem_returns_bound_key(self, engine):
        code = issue(engine)

        grant = engine.redeem(code, VERIFIER, REDIRECT)

        assert grant.api_key == "sk_soc_abc"
        assert grant.scope == "mcp:tools"
        assert grant.client_id == "client_1"

    def test_plain_redeem(self, engine):
        code = issue(engine, challenge="plain-verifier-value", method="plain")

        assert engine.redeem(code, "plain-verifier-value").api_key == "sk_soc_abc"

    def test_codes_are_unique_hex(self, engine):
        codes = {issue(engine) for _ in range(100)}

        assert len(codes) == 100
        assert all(len(code) == 64 and int(code, 16) >= 0 for code in codes)

    # ----- Single use -----

    def test_second_redemption_fails(self, engine):
        code = issue(engine)
        engine.redeem(code, VERIFIER)

        with pytest.raises(GrantError, match="not found or expired"):
            engine.redeem(code, VERIFIER)

    def test_failed_redemption_still_consumes_code(self, engine):
        """A wrong verifier burns the code: retrying with the right one fails."""
        code = issue(engine)

        with pytest.raises(GrantError, match="code_verifier"):
            engine.redeem(code, "wrong-verifier")
        with pytest.raises(GrantError, match="not found or expired"):
            engine.redeem(code, VERIFIER)
        assert code not in engine

    def test_unknown_code(self, engine):
        with pytest.raises(GrantError, match="Authorization code not found or expired"):
            engine.redeem("0" * 64, VERIFIER)

    def test_concurrent_redemptions_yield_one_success(self, engine):
        code = issue(engine)
        barrier = threading.Barrier(8)
        outcomes: list[str] = []

        def attempt():
            barrier.wait()
            try:
                engine.redeem(code, VERIFIER)
                outcomes.append("ok")
            except GrantError:
                outcomes.append("invalid_grant")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("invalid_grant") == 7

    # ----- Expiry -----

    def test_expired_code(self, engine, clock):
        code = issue(engine)
        clock.now += 601

        with pytest.raises(GrantError, match="Authorization code expired"):
            engine.redeem(code, VERIFIER)

    def test_code_valid_right_up_to_ttl(self, engine, clock):
        code = issue(engine)
        clock.now += 600

        assert engine.redeem(code, VERIFIER).api_key == "sk_soc_abc"

    # ----- Redirect URI -----

    def test_redirect_mismatch(self, engine):
        code = issue(engine)

        with pytest.raises(GrantError, match="redirect_uri mismatch"):
            engine.redeem(code, VERIFIER, "http://evil.example/callback")

    def test_absent_redirect_skips_check(self, engine):
        code = issue(engine)

        assert engine.redeem(code, VERIFIER, None).api_key == "sk_soc_abc"

    def test_absent_redirect_rejected_when_required(self, engine):
        code = issue(engine)

        with pytest.raises(GrantError, match="redirect_uri mismatch"):
            engine.redeem(code, VERIFIER, None, require_redirect_uri=True)

    # ----- PKCE -----

    def test_wrong_verifier(self, engine):
        code = issue(engine)

        with pytest.raises(GrantError, match="code_verifier does not match the challenge"):
            engine.redeem(code, VERIFIER + "x")

    def test_non_ascii_verifier_is_a_mismatch(self, engine):
        code = issue(engine)

        with pytest.raises(GrantError, match="code_verifier"):
            engine.redeem(code, "vérifier")

    def test_non_ascii_verifier_is_hashed_as_utf8(self):
        verifier = "vérifier-été"
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("utf-8")).digest())

        assert compute_challenge(verifier, "S256") == expected.decode().rstrip("=")

    @pytest.mark.parametrize("method, verifier", [("S256", "é"), ("S256", "ascii"), ("plain", "")])
    def test_empty_challenge_never_matches(self, engine, method, verifier):
        """A code issued without a challenge cannot be redeemed by any verifier."""
        code = issue(engine, challenge="", method=method)

        with pytest.raises(GrantError, match="code_verifier does not match the challenge"):
            engine.redeem(code, verifier)

    def test_mismatch_logs_only_previews(self, engine, caplog):
        caplog.set_level(logging.WARNING, logger="social_mcp.codes")
        wrong = "wrong-verifier-" + "z" * 40
        computed = compute_challenge(wrong, "S256")
        code = issue(engine)

        with pytest.raises(GrantError):
            engine.redeem(code, wrong)

        [record] = [r for r in caplog.records if r.getMessage() == "PKCE verification failed"]
        assert record.log_data["stored_challenge"] == preview(S256_CHALLENGE)
        assert record.log_data["computed_challenge"] == preview(computed)
        assert record.log_data["stored_challenge"] == S256_CHALLENGE[:12] + "..."
        assert record.log_data["verifier_length"] == len(wrong)
        logged = caplog.text + str(record.log_data)
        assert S256_CHALLENGE not in logged
        assert computed not in logged
        assert wrong not in logged


class TestSweep:
    def test_sweep_removes_only_expired(self, engine, clock):
        old = issue(engine)
        clock.now += 500
        fresh = issue(engine)
        clock.now += 200

        assert engine.sweep() == 1
        assert old not in engine
        assert fresh in engine

    async def test_background_sweeper_runs_while_open(self, engine, clock):
        code = issue(engine)
        clock.now += 601

        async with engine.running():
            for _ in range(50):
                if code not in engine:
                    break
                await asyncio.sleep(0.01)

        assert len(engine) == 0
