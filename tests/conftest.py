"""Shared fixtures for the NMEA converter tests."""

import pytest


RMC_NOON = "$GPRMC,120000.00,A,3530.0000,N,13930.0000,E,0.0,0.0,010125,,*00"
GGA_NOON = "$GPGGA,120000.00,3530.0000,N,13930.0000,E,1,08,0.9,100.0,M,0.0,M,,*00"


@pytest.fixture
def single_fix_content():
    """One RMC fix with the matching GGA altitude."""
    return f"{RMC_NOON}\n{GGA_NOON}\n"


@pytest.fixture
def sample_log_content():
    """A short log with noise lines, CRLF endings and a corrupt sentence."""
    lines = [
        "$GPGSV,3,1,12,01,40,083,46,02,17,308,41,12,07,344,39,14,22,228,45*75",
        "$GPRMC,120000.00,A,3530.0000,N,13930.0000,E,0.0,0.0,010125,,*00",
        "$GPGGA,120000.00,3530.0000,N,13930.0000,E,1,08,0.9,100.0,M,0.0,M,,*00",
        "$GPGSA,A,3,04,05,,09,12,,,24,,,,,2.5,1.3,2.1*39",
        "$GPRMC,120001.00,A,3530.0010,N,13930.0010,E,0.0,0.0,010125,,*00",
        "$GPGGA,120001.00,3530.0010,N,13930.0010,E,1,08,0.9,101.5,M,0.0,M,,*00",
        "$GPRMC,120002.00,A,3530.00",
        "$GPRMC,120003.00,V,3530.0030,N,13930.0030,E,0.0,0.0,010125,,*00",
        "$GPRMC,120004.00,A,3530.0040,N,13930.0040,E,0.0,0.0,010125,,*00",
        "",
    ]
    return "\r\n".join(lines)
