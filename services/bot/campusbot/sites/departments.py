"""
Department code tables and student-id decoding.

A student id is ``<type><year><dept><serial>``: type 4 is undergraduate,
7 master, 8 PhD; the year has 2 digits (8-digit ids) or 3 digits (9-digit
ids). Sociology and social work share "74" and need one more digit.
"""

from typing import Dict

# Undergraduate short names (學部)
DEPARTMENT_CODES: Dict[str, str] = {
    "法律": "71",
    "法學": "712",
    "司法": "714",
    "財法": "716",
    "公行": "72",
    "經濟": "73",
    "社學": "742",
    "社工": "744",
    "財政": "75",
    "不動": "76",
    "會計": "77",
    "統計": "78",
    "企管": "79",
    "金融": "80",
    "中文": "81",
    "應外": "82",
    "歷史": "83",
    "休運": "84",
    "資工": "85",
    "通訊": "86",
    "電機": "87",
}

FULL_DEPARTMENT_CODES: Dict[str, str] = {
    "法律學系": "71",
    "法學組": "712",
    "司法組": "714",
    "財經法組": "716",
    "公共行政暨政策學系": "72",
    "經濟學系": "73",
    "社會學系": "742",
    "社會工作學系": "744",
    "財政學系": "75",
    "不動產與城鄉環境學系": "76",
    "會計學系": "77",
    "統計學系": "78",
    "企業管理學系": "79",
    "金融與合作經營學系": "80",
    "中國文學系": "81",
    "應用外語學系": "82",
    "歷史學系": "83",
    "休閒運動管理學系": "84",
    "資訊工程學系": "85",
    "通訊工程學系": "86",
    "電機工程學系": "87",
}

MASTER_DEPARTMENT_CODES: Dict[str, str] = {
    "企業管理學系碩士班": "31",
    "會計學系碩士班": "32",
    "統計學系碩士班": "33",
    "金融與合作經營學系碩士班": "34",
    "國際企業研究所碩士班": "35",
    "資訊管理研究所": "36",
    "財務金融英語碩士學位學程": "37",
    "民俗藝術與文化資產研究所": "41",
    "古典文獻學研究所": "42",
    "中國文學系碩士班": "43",
    "歷史學系碩士班": "44",
    "法律學系碩士班一般生組": "51",
    "法律學系碩士班法律專業組": "52",
    "經濟學系碩士班": "61",
    "社會學系碩士班": "62",
    "社會工作學系碩士班": "63",
    "犯罪學研究所": "64",
    "公共行政暨政策學系碩士班": "71",
    "財政學系碩士班": "72",
    "不動產與城鄉環境學系碩士班": "73",
    "都市計劃研究所碩士班": "74",
    "自然資源與環境管理研究所碩士班": "75",
    "城市治理英語碩士學位學程": "76",
    "會計學系碩士在職專班": "77",
    "統計學系碩士在職專班": "78",
    "企業管理學系碩士在職專班": "79",
    "通訊工程學系碩士班": "81",
    "電機工程學系碩士班": "82",
    "資訊工程學系碩士班": "83",
    "智慧醫療管理英語碩士學位學程": "91",
}

PHD_DEPARTMENT_CODES: Dict[str, str] = {
    "會計學系博士班": "32",
    "法律學系博士班": "51",
    "經濟學系博士班": "61",
    "公共行政暨政策學系博士班": "71",
    "不動產與城鄉環境學系博士班": "73",
    "都市計劃研究所博士班": "74",
    "自然資源與環境管理研究所博士班": "75",
    "電機資訊學院博士班": "76",
}

DEPARTMENT_NAMES = {code: name for name, code in DEPARTMENT_CODES.items()}
FULL_DEPARTMENT_NAMES = {code: name for name, code in FULL_DEPARTMENT_CODES.items()}
MASTER_DEPARTMENT_NAMES = {code: name for name, code in MASTER_DEPARTMENT_CODES.items()}
PHD_DEPARTMENT_NAMES = {code: name for name, code in PHD_DEPARTMENT_CODES.items()}

UNKNOWN = "未知系所"
UNKNOWN_MASTER = "未知碩士班"
UNKNOWN_PHD = "未知博士班"


def is_student_id(value: str) -> bool:
    return len(value) in (8, 9) and value.isascii() and value.isdigit()


def extract_year(student_id: str) -> int:
    """ROC admission year: 410571074 -> 105, 41121074 -> 112."""
    if len(student_id) < 5:
        return 0
    digits = student_id[1:4] if len(student_id) == 9 else student_id[1:3]
    try:
        return int(digits)
    except ValueError:
        return 0


def determine_department(student_id: str) -> str:
    """Department name for an id, or a "未知…" placeholder."""
    if len(student_id) < 7:
        return UNKNOWN
    long_form = len(student_id) == 9
    code = student_id[4:6] if long_form else student_id[3:5]

    if student_id[0] == "7":
        return MASTER_DEPARTMENT_NAMES.get(code, UNKNOWN_MASTER)
    if student_id[0] == "8":
        return PHD_DEPARTMENT_NAMES.get(code, UNKNOWN_PHD)

    if code == "74":
        extra = student_id[6] if long_form else student_id[5]
        code += extra
    name = DEPARTMENT_NAMES.get(code)
    return name + "系" if name else UNKNOWN


def lookup_code(query: str) -> str:
    """
    Department code for a name, short name or "<short>系"; "" when unknown.
    Master and PhD names are matched last.
    """
    query = query.strip()
    if not query:
        return ""
    if query in FULL_DEPARTMENT_CODES:
        return FULL_DEPARTMENT_CODES[query]
    short = query[:-1] if query.endswith("系") else query
    if short in DEPARTMENT_CODES:
        return DEPARTMENT_CODES[short]
    for table in (MASTER_DEPARTMENT_CODES, PHD_DEPARTMENT_CODES):
        if query in table:
            return table[query]
    return ""


def lookup_name(code: str) -> str:
    """Full undergraduate department name for a code; "" when unknown."""
    return FULL_DEPARTMENT_NAMES.get(code.strip(), "")
