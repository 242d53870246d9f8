"""
Zodiac sign lookup for Gregorian dates and Hebrew months.
"""

# (sign, (start_month, start_day), (end_month, end_day)), both ends inclusive.
# Capricorn wraps the year end and is handled by the two-sided check below.
_GREGORIAN_RANGES = (
    ("aries", (3, 21), (4, 19)),
    ("taurus", (4, 20), (5, 20)),
    ("gemini", (5, 21), (6, 20)),
    ("cancer", (6, 21), (7, 22)),
    ("leo", (7, 23), (8, 22)),
    ("virgo", (8, 23), (9, 22)),
    ("libra", (9, 23), (10, 22)),
    ("scorpio", (10, 23), (11, 21)),
    ("sagittarius", (11, 22), (12, 21)),
    ("capricorn", (12, 22), (1, 19)),
    ("aquarius", (1, 20), (2, 18)),
    ("pisces", (2, 19), (3, 20)),
)

# Month names as spelled by Hebcal.
_HEBREW_MONTH_SIGNS = {
    "Nisan": "aries",
    "Iyyar": "taurus",
    "Sivan": "gemini",
    "Tamuz": "cancer",
    "Av": "leo",
    "Elul": "virgo",
    "Tishrei": "libra",
    "Cheshvan": "scorpio",
    "Kislev": "sagittarius",
    "Tevet": "capricorn",
    "Sh'vat": "aquarius",
    "Adar": "pisces",
    "Adar I": "pisces",
    "Adar II": "pisces",
}

_NAMES_EN = {
    "aries": "Aries",
    "taurus": "Taurus",
    "gemini": "Gemini",
    "cancer": "Cancer",
    "leo": "Leo",
    "virgo": "Virgo",
    "libra": "Libra",
    "scorpio": "Scorpio",
    "sagittarius": "Sagittarius",
    "capricorn": "Capricorn",
    "aquarius": "Aquarius",
    "pisces": "Pisces",
}

_NAMES_HE = {
    "aries": "טלה",
    "taurus": "שור",
    "gemini": "תאומים",
    "cancer": "סרטן",
    "leo": "אריה",
    "virgo": "בתולה",
    "libra": "מאזניים",
    "scorpio": "עקרב",
    "sagittarius": "קשת",
    "capricorn": "גדי",
    "aquarius": "דלי",
    "pisces": "דגים",
}


def gregorian_sign(month: int, day: int) -> str | None:
    for sign, (start_m, start_d), (end_m, end_d) in _GREGORIAN_RANGES:
        if (month == start_m and day >= start_d) or (month == end_m and day <= end_d):
            return sign
    return None


def hebrew_sign(hebrew_month: str | None) -> str | None:
    if not hebrew_month:
        return None
    return _HEBREW_MONTH_SIGNS.get(hebrew_month)


def sign_name(sign: str, language: str = "en") -> str:
    """Localised display name; unknown signs are returned unchanged."""
    names = _NAMES_HE if language == "he" else _NAMES_EN
    return names.get(sign, sign)
