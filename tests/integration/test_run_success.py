from __future__ import annotations

import pytest

from fastlane_sync.cli import main as cli_main

"""Integration test: full run over every configured table, then a re-run.

End-to-end through main(): fake worksheet service (paged, DATA_ROWS envelope),
in-memory data store, derived product counts, sync_runs bookkeeping.
"""

pytestmark = pytest.mark.integration


def _seed(service):
    service.add_rows("ws_apps", [
        {"rowid": "t1", "f_name": "Alpha", "f_appid": "1001", "_updatedAt": "2024-05-01 10:00:00"},
        {"rowid": "t2", "f_name": "Beta", "f_appid": "1002", "_updatedAt": "2024-05-01 11:00:00"},
    ])
    service.add_rows("ws_accounts", [
        {"rowid": "a1", "a_email": "x@y.com"},
        {"rowid": "a2", "a_email": "solo@y.com"},
        {"rowid": "a3", "a_email": "empty@y.com"},
    ])
    service.add_rows("ws_products", [
        {"rowid": "p1", "p_name": "One", "p_email": "x@y.com", "p_status": [{"key": "k1", "value": "上架"}]},
        {"rowid": "p2", "p_name": "Two", "p_email": "x@y.com", "p_status": [{"key": "k2", "value": "下架"}]},
        {"rowid": "p3", "p_name": "Three", "p_email": "x@y.com", "p_status": '[{"key":"k3","value":"审核中"}]'},
        {"rowid": "p4", "p_name": "Four", "p_email": "solo@y.com"},
        {"rowid": "p5", "p_name": "Five"},
    ])


def test_full_run_then_idempotent_rerun(write_config, hap_env, fake_factory, live_store, service, capsys):
    _seed(service)

    code = cli_main(["--mode", "full"])
    out = capsys.readouterr().out

    assert code == 0
    assert "SUMMARY mode=full tables=3/3 rows=10 new=10 updated=0 unchanged=0 failed=0" in out
    assert live_store.count("target_apps") == 2
    assert live_store.count("products") == 5
    assert live_store.count("accounts") == 3

    accounts = {r["account_email"]: r["product_count"] for r in live_store.rows("accounts")}
    # 状態に関係なく全件カウント、子なしは 0
    assert accounts == {"x@y.com": 3, "solo@y.com": 1, "empty@y.com": 0}
    assert live_store.tables["products"]["p3"]["app_status"] == "审核中"
    assert live_store.tables["products"]["p4"]["app_status"] is None

    # products は 3 ページ (page_size=2)
    assert len(service.list_calls("ws_products")) == 3

    code = cli_main(["--mode", "full"])
    out = capsys.readouterr().out
    assert code == 0
    assert "rows=10 new=0 updated=0 unchanged=10 failed=0" in out
    assert live_store.count("products") == 5

    assert [r["status"] for r in live_store.runs] == ["COMPLETED", "COMPLETED"]
    assert live_store.locks == {}
    # 集計は再計算しても同じ値
    assert live_store.tables["accounts"]["a1"]["product_count"] == 3


def test_update_on_source_refreshes_row_and_counts(write_config, hap_env, fake_factory, live_store, service, capsys):
    _seed(service)
    cli_main(["--mode", "full"])
    capsys.readouterr()

    # p4 を別アカウントへ移動
    for row in service.worksheets["ws_products"]:
        if row["rowid"] == "p4":
            row["p_email"] = "x@y.com"

    code = cli_main(["--mode", "full", "--tables", "products"])
    out = capsys.readouterr().out
    assert code == 0
    assert "rows=5 new=0 updated=1 unchanged=4" in out
    accounts = {r["account_email"]: r["product_count"] for r in live_store.rows("accounts")}
    assert accounts == {"x@y.com": 4, "solo@y.com": 0, "empty@y.com": 0}
