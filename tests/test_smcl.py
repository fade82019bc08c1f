from stata_mcp_client.utils.smcl import filter_internal_lines, parse_smcl


def test_filter_drops_worker_bookkeeping_lines() -> None:
    text = "\n".join(
        [
            "{smcl}",
            "{txt}{sf}{ul off}{.-}",
            "      name:  {res}_mcp_smcl_3",
            "       {txt}log:  {res}/tmp/mcp_smcl_3.smcl",
            "  {txt}log type:  {res}smcl",
            " {txt}opened on:  {res}17 Oct 2026, 10:00:00",
            ". sysuse auto",
            "(1978 automobile data)",
            "",
            "capture _return hold mcp_hold_3",
            "capture log close _mcp_smcl_3",
        ]
    )

    assert filter_internal_lines(text) == ". sysuse auto\n(1978 automobile data)\n"


def test_parse_smcl_takes_last_return_code_and_error_blocks() -> None:
    text = (
        ". reg y x\n"
        "{err}variable {bf}y{sf} not found\n"
        "{txt}{search r(111), local:r(111);}\n"
        ". count if\n"
        "{err}invalid syntax\n"
        "{txt}r(198);\n"
    )
    summary = parse_smcl(text)

    assert summary.rc == 198
    assert summary.has_error is True
    assert summary.error_context == "Error: variable {bf}y{sf} not found\nError: invalid syntax"


def test_parse_smcl_without_errors() -> None:
    summary = parse_smcl(". display 1\n1\n")

    assert summary.rc is None
    assert summary.error_context is None
    assert summary.has_error is False
    assert parse_smcl("").rc is None
