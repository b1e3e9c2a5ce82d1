from studio_lifecycle.main import format_registry, main


def test_registry_listing_marks_terminal_states():
    listing = format_registry()
    assert "invoice (initial DRAFT)" in listing
    assert "  SENT -> OVERDUE, PAID, VOID" in listing
    assert "  VOID -> - [terminal]" in listing
    assert "  PENDING -> FAILED, SUCCEEDED" in listing


def test_transitions_command_prints_registry(capsys):
    assert main(["transitions"]) == 0
    out = capsys.readouterr().out
    assert "tattoo_request (initial PENDING)" in out
    assert "  APPROVED -> IN_PROGRESS" in out
