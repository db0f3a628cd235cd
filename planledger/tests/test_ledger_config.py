from __future__ import annotations

import pytest

from planledger import ledger_config
from planledger.app.services.ledger import schema_sql


def test_table_names_accept_a_prefix():
    names = ledger_config.TableNames.with_prefix("billing_")

    assert names.plans == "billing_plans"
    assert names.feature_subscription == "billing_feature_subscription"
    assert set(names.as_dict()) == {"features", "plans", "feature_plan", "subscriptions", "feature_subscription"}


@pytest.mark.parametrize("bad", ["plans; DROP TABLE plans", "1plans", "plans-archive", ""])
def test_table_names_reject_unsafe_identifiers(bad):
    with pytest.raises(ValueError):
        ledger_config.TableNames(plans=bad)


def test_schema_uses_configured_table_names():
    sql = schema_sql(ledger_config.TableNames.with_prefix("ledger_"))

    assert "CREATE TABLE IF NOT EXISTS ledger_subscriptions" in sql
    assert "REFERENCES ledger_plans (id)" in sql
    assert "ledger_feature_subscription_live_pair_idx" in sql
    assert "{" not in sql


def test_connect_timeout_parsing():
    assert ledger_config._parse_connect_timeout("2.5") == 3

    with pytest.raises(ValueError):
        ledger_config._parse_connect_timeout("-1")
    with pytest.raises(ValueError):
        ledger_config._parse_connect_timeout("soon")
