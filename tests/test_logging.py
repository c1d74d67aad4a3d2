"""Correlation ids bound through context variables."""

import logging

from giftflow.common.logging import ContextFilter, log_context, message_id_ctx, voucher_id_ctx


def test_log_context_binds_and_restores():
    with log_context(voucher_id="v-1", message_id="m-1"):
        assert voucher_id_ctx.get() == "v-1"
        with log_context(voucher_id="v-2"):
            assert voucher_id_ctx.get() == "v-2"
            assert message_id_ctx.get() == "m-1"
        assert voucher_id_ctx.get() == "v-1"

    assert voucher_id_ctx.get() == ""
    assert message_id_ctx.get() == ""


def test_context_filter_copies_ids_onto_records():
    record = logging.LogRecord("giftflow", logging.INFO, __file__, 1, "delivery_sent", None, None)

    with log_context(trace_id="t-1"):
        assert ContextFilter().filter(record) is True

    assert record.trace_id == "t-1"
    assert record.voucher_id == ""
    assert record.message_id == ""
