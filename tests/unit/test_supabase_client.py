"""
Unit tests for Supabase database client.
Tests with mocked Supabase API calls.
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from postgrest.exceptions import APIError

from db.supabase_client import SupabaseClient
from models.appointment import Appointment
from models.party import Wallet
from utils.exceptions import DatabaseError, SlotUnavailableError


@pytest.fixture
def supabase_client(mock_supabase_client):
    """Create SupabaseClient with mocked client."""
    mock_client, _ = mock_supabase_client
    with patch("db.supabase_client.create_client", return_value=mock_client):
        client = SupabaseClient()
        client.client = mock_client
        return client


def _response(data):
    response = MagicMock()
    response.data = data
    return response


def _api_error(code):
    return APIError({"message": "conflict", "code": code, "hint": None, "details": None})


PARTY_ROW = {
    "id": "party_123",
    "role": "patient",
    "full_name": "Asha Rao",
    "telegram_id": 123456789,
    "wallet_balance": "3000.00",
    "wallet_frozen": "1000.00",
    "total_earnings": "0",
    "version": 4,
    "created_at": "2026-03-01T10:00:00+00:00",
}


@pytest.mark.asyncio
async def test_get_party_parses_wallet_columns(supabase_client, mock_supabase_client):
    """Test the flat wallet columns are folded into a Wallet."""
    mock_client, mock_table = mock_supabase_client
    mock_table.select.return_value.eq.return_value.execute.return_value = _response([PARTY_ROW])

    party = await supabase_client.get_party("party_123")

    mock_client.table.assert_called_with("parties")
    assert party.id == "party_123"
    assert party.wallet == Wallet(balance=Decimal("3000"), frozen=Decimal("1000"))
    assert party.version == 4
    assert party.created_at.year == 2026


@pytest.mark.asyncio
async def test_get_party_not_found(supabase_client, mock_supabase_client):
    """Test getting a party that does not exist."""
    _, mock_table = mock_supabase_client
    mock_table.select.return_value.eq.return_value.execute.return_value = _response([])

    assert await supabase_client.get_party("missing") is None


@pytest.mark.asyncio
async def test_get_party_error(supabase_client, mock_supabase_client):
    """Test unexpected errors are wrapped in DatabaseError."""
    _, mock_table = mock_supabase_client
    mock_table.select.return_value.eq.return_value.execute.side_effect = Exception(
        "Connection reset"
    )

    with pytest.raises(DatabaseError):
        await supabase_client.get_party("party_123")


@pytest.mark.asyncio
async def test_update_party_wallet_filters_on_version(supabase_client, mock_supabase_client):
    """Test the wallet update is a compare-and-set on the version column."""
    _, mock_table = mock_supabase_client
    updated = dict(PARTY_ROW, wallet_balance="2500.00", wallet_frozen="0.00", version=5)
    chain = mock_table.update.return_value.eq.return_value.eq.return_value
    chain.execute.return_value = _response([updated])

    party = await supabase_client.update_party_wallet(
        "party_123", 4, Wallet(balance=Decimal("2500")), Decimal("0")
    )

    update_data = mock_table.update.call_args[0][0]
    assert update_data["wallet_balance"] == "2500"
    assert update_data["version"] == 5
    mock_table.update.return_value.eq.return_value.eq.assert_called_once_with("version", 4)
    assert party.wallet.balance == Decimal("2500")


@pytest.mark.asyncio
async def test_update_party_wallet_version_miss(supabase_client, mock_supabase_client):
    """Test an empty update response means another writer won."""
    _, mock_table = mock_supabase_client
    chain = mock_table.update.return_value.eq.return_value.eq.return_value
    chain.execute.return_value = _response([])

    result = await supabase_client.update_party_wallet(
        "party_123", 4, Wallet(balance=Decimal("2500")), Decimal("0")
    )

    assert result is None


@pytest.mark.asyncio
async def test_insert_appointment_round_trip(supabase_client, mock_supabase_client, tomorrow):
    """Test slot columns are flattened on insert and rebuilt on read."""
    mock_client, mock_table = mock_supabase_client
    appointment = Appointment(
        modality="clinic",
        doctor_id="doctor_1",
        patient_id="patient_1",
        clinic_id="clinic-1",
        slot=tomorrow,
    )
    row = supabase_client._appointment_row(appointment)
    row["id"] = "appt_123"
    mock_table.insert.return_value.execute.return_value = _response([row])

    saved = await supabase_client.insert_appointment(appointment, ["pending", "accepted"])

    mock_client.table.assert_called_with("clinic_appointments")
    inserted = mock_table.insert.call_args[0][0]
    assert "id" not in inserted
    assert "modality" not in inserted
    assert inserted["slot_duration"] == 30
    assert saved.id == "appt_123"
    assert saved.modality == "clinic"
    assert saved.slot.start == tomorrow.start
    assert saved.slot.end == tomorrow.end


@pytest.mark.asyncio
async def test_insert_appointment_exclusion_violation(
    supabase_client, mock_supabase_client, tomorrow
):
    """Test the overlap constraint surfaces as SlotUnavailableError."""
    _, mock_table = mock_supabase_client
    mock_table.insert.return_value.execute.side_effect = _api_error("23P01")

    with pytest.raises(SlotUnavailableError):
        await supabase_client.insert_appointment(
            Appointment(modality="online", doctor_id="d1", patient_id="p1", slot=tomorrow),
            ["pending", "accepted"],
        )


@pytest.mark.asyncio
async def test_insert_appointment_other_api_error(
    supabase_client, mock_supabase_client, tomorrow
):
    """Test other API errors are wrapped in DatabaseError."""
    _, mock_table = mock_supabase_client
    mock_table.insert.return_value.execute.side_effect = _api_error("42501")

    with pytest.raises(DatabaseError):
        await supabase_client.insert_appointment(
            Appointment(modality="online", doctor_id="d1", patient_id="p1", slot=tomorrow),
            ["pending", "accepted"],
        )


@pytest.mark.asyncio
async def test_update_appointment_version_miss(supabase_client, mock_supabase_client, tomorrow):
    """Test an appointment CAS miss returns None."""
    _, mock_table = mock_supabase_client
    chain = mock_table.update.return_value.eq.return_value.eq.return_value
    chain.execute.return_value = _response([])

    result = await supabase_client.update_appointment(
        Appointment(
            id="appt_123", modality="online", doctor_id="d1", patient_id="p1", slot=tomorrow
        ),
        expected_version=2,
    )

    assert result is None
    assert mock_table.update.call_args[0][0]["version"] == 3


@pytest.mark.asyncio
async def test_record_payment_event(supabase_client, mock_supabase_client):
    """Test a new gateway event is recorded."""
    mock_client, mock_table = mock_supabase_client
    mock_table.insert.return_value.execute.return_value = _response([{"id": "evt_1"}])

    assert await supabase_client.record_payment_event("evt_1") is True
    mock_client.table.assert_called_with("payment_events")


@pytest.mark.asyncio
async def test_record_payment_event_duplicate(supabase_client, mock_supabase_client):
    """Test a replayed gateway event is reported as already recorded."""
    _, mock_table = mock_supabase_client
    mock_table.insert.return_value.execute.side_effect = _api_error("23505")

    assert await supabase_client.record_payment_event("evt_1") is False


@pytest.mark.asyncio
async def test_list_appointments_error(supabase_client, mock_supabase_client):
    """Test listing errors are wrapped in DatabaseError."""
    _, mock_table = mock_supabase_client
    mock_table.select.side_effect = Exception("Database error")

    with pytest.raises(DatabaseError):
        await supabase_client.list_appointments("online", ["pending"])
