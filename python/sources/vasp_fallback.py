"""
Last-known-good VASP registry, published when the live workbook cannot be
parsed. Dated to the registry edition it was copied from.
"""

from typing import List

from tabular_parser import VaspRecord, VaspRegistry, parse_expired_note

EMBEDDED_UPDATED_AT = "2025-10-22T00:00:00.000Z"

VASP_EXPIRED_NOTE_FALLBACK = (
    "※ 신고 유효기간 만료된 미갱신 사업자 : 지닥(GDAC)(㈜피어테크), 프로비트(오션스㈜), "
    "후오비코리아(후오비㈜), 플랫타익스체인지(㈜플랫타이엑스), 한빗코(㈜한빗코코리아), "
    "비트레이드(㈜블록체인컴퍼니), 코인엔코인(㈜코엔코코리아), 캐셔레스트(㈜뉴링크), "
    "텐앤텐(㈜텐앤텐), 에이프로빗(㈜에이프로코리아), 마이키핀월렛(㈜씨피랩스), 큐비트(큐비트㈜), "
    "카르도(㈜카르도), 델리오(㈜델리오), 페이코인(PayProtocol AG), 코인빗(㈜엑시아소프트)"
)

# published with every registry snapshot
VASP_EXPIRED_NOTE_2 = (
    "※ 미갱신 사업자도 이용자 자산의 이전·반환이 완료될 때까지, "
    "「가상자산이용자보호법」상 가상자산사업자에 해당"
)

_ROWS = [
    ("업비트", "두나무 주식회사", "오경석"),
    ("코빗", "주식회사 코빗", "오세진"),
    ("코인원", "주식회사 코인원", "이성현"),
    ("빗썸", "주식회사 빗썸", "이재원"),
    ("플라이빗", "주식회사 한국디지털거래소", "김석진"),
    ("고팍스", "주식회사 스트리미", "이준행"),
    ("BTX", "차일들리 주식회사", "김은태"),
    ("포블", "주식회사 포블게이트", "안현준"),
    ("코어닥스", "㈜코어닥스", "김찬우"),
    ("비블록", "주식회사 그레이브릿지", "황익찬"),
    ("오케이비트", "주식회사 포리스닥스코리아리미티드", "라파엘드마르코이멜로"),
    ("빗크몬", "주식회사 골든퓨쳐스", "권정만"),
    ("프라뱅", "주식회사 프라뱅", "김상진"),
    ("보라비트", "주식회사 뱅코", "김성훈"),
    ("코다(KODA)", "주식회사 한국디지털에셋", "조진석"),
    ("케이닥(KDAC)", "주식회사 한국디지털자산수탁", "조성일, 김준홍"),
    ("오하이월렛", "주식회사 월렛원", "강준우, 박인수"),
    ("하이퍼리즘", "주식회사 하이퍼리즘", "오상록, 이원준"),
    ("오아시스거래소", "㈜가디언홀딩스", "이동민"),
    ("커스텔라", "주식회사 마인드시프트", "박용건"),
    ("인피닛블록", "주식회사 인피닛블록", "정구태"),
    ("디에스알브이랩스", "㈜디에스알브이랩스", "김지윤"),
    ("비댁스", "비댁스 주식회사", "류홍열"),
    ("INEX(인엑스)", "㈜인피니티익스체인지코리아", "이재강"),
    ("돌핀(Dolfin)", "㈜웨이브릿지", "오종욱"),
    ("바우맨", "㈜해피블록", "김규윤"),
    ("로빗", "㈜블로세이프", "한성주"),
]


def embedded_records() -> List[VaspRecord]:
    return [VaspRecord(no=i, service=s, company=c, ceo=ceo)
            for i, (s, c, ceo) in enumerate(_ROWS, start=1)]


def embedded_registry() -> VaspRegistry:
    """The embedded dataset in the shape the workbook parser produces"""
    return VaspRegistry(
        normal=embedded_records(),
        expired=parse_expired_note(VASP_EXPIRED_NOTE_FALLBACK),
        base_date=EMBEDDED_UPDATED_AT,
        expired_note_found=True,
    )
