from __future__ import annotations

from unittest.mock import MagicMock, patch

from boipaben import crud
from boipaben.domain.visibility import PublicAnonymous
from boipaben.models import PaymentMethod

from factories import BUYER, NOW


@patch("boipaben.crud.SaleRecorder")
def test_on_order_confirmed_delegates_to_recorder(mock_recorder, test_settings):
    """Verify that on_order_confirmed wires the recorder with the configured shipping fee."""
    mock_session = MagicMock()

    crud.on_order_confirmed(
        mock_session,
        ["b1"],
        BUYER,
        PaymentMethod.CARD,
        NOW,
        external_ref="cs_1",
        amount=120.0,
        settings=test_settings,
    )

    mock_recorder.assert_called_once_with(mock_session, shipping_fee=test_settings.shipping_fee)
    mock_recorder.return_value.record_sale.assert_called_once_with(
        ["b1"],
        BUYER,
        NOW,
        method=PaymentMethod.CARD,
        external_ref="cs_1",
        shipping_address=None,
        amount=120.0,
    )


@patch("boipaben.crud.BookService")
def test_list_visible_books_builds_query(mock_service, test_settings):
    """Verify that list_visible_books forwards filters as a BookQuery."""
    mock_session = MagicMock()
    mock_service.return_value.list_visible_books.return_value = MagicMock(books=[])

    result = crud.list_visible_books(
        mock_session, PublicAnonymous(), NOW, category="Novel", limit=5, settings=test_settings
    )

    assert result == []
    context, now, query = mock_service.return_value.list_visible_books.call_args.args
    assert context == PublicAnonymous()
    assert now == NOW
    assert query.category == "Novel"
    assert query.limit == 5


@patch("boipaben.crud.CleanupScheduler")
def test_run_cleanup_sweep_delegates_to_scheduler(mock_scheduler, test_settings):
    """Verify that run_cleanup_sweep runs one non-raising sweep."""
    factory = MagicMock()
    mock_scheduler.return_value.run_cleanup_sweep.return_value = 2

    assert crud.run_cleanup_sweep(NOW, session_factory=factory, settings=test_settings) == 2
    assert mock_scheduler.call_args.args[0] is factory
    assert mock_scheduler.call_args.kwargs["interval"] == test_settings.cleanup_interval
    mock_scheduler.return_value.run_cleanup_sweep.assert_called_once_with(NOW)
