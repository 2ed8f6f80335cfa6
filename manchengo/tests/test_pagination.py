import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from manchengo.app.db.models.models_v1 import AuditLog, Supplier
from manchengo.services import audit
from manchengo.services.errors import InvalidCursorError, InvalidSortError
from manchengo.services.pagination import (
    CursorPageRequest,
    DecodedCursor,
    OffsetPageRequest,
    SortOptions,
    cursor_operator,
    decode_cursor,
    encode_cursor,
    paginate_audit_logs,
    paginate_audit_logs_offset,
    paginate_suppliers,
)


def _suppliers(make, names):
    return [make.supplier(name=name) for name in names]


def test_cursor_codec_is_base64url_json():
    """
    GIVEN
    - un curseur (id=42, name="Laiterie")

    THEN
    - le jeton est du JSON base64url sans padding
    - le décodage rend les mêmes valeurs
    """
    token = encode_cursor(DecodedCursor(id=42, sort_field="name", sort_value="Laiterie"))

    assert "=" not in token
    raw = json.loads(base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)))
    assert raw == {"id": 42, "sortField": "name", "sortValue": "Laiterie"}
    assert decode_cursor(token) == DecodedCursor(id=42, sort_field="name", sort_value="Laiterie")


@pytest.mark.parametrize(
    "token",
    [
        "pas-du-base64!!",
        base64.urlsafe_b64encode(b"[1, 2]").decode(),
        base64.urlsafe_b64encode(b'{"id": "abc"}').decode(),
        base64.urlsafe_b64encode(b'{"id": true}').decode(),
    ],
)
def test_malformed_cursor_decodes_to_none(token):
    assert decode_cursor(token) is None


def test_cursor_operator_matrix():
    assert cursor_operator("asc", "forward") == "gt"
    assert cursor_operator("desc", "forward") == "lt"
    assert cursor_operator("asc", "backward") == "lt"
    assert cursor_operator("desc", "backward") == "gt"


def test_forward_then_backward_traversal(db_session, make):
    """
    GIVEN
    - 5 fournisseurs, tri par nom ascendant, pages de 2

    THEN
    - forward : [A, B] -> [C, D] -> [E], has_more s'éteint en fin de liste
    - backward depuis la 3e page : on retrouve [C, D]
    """
    _suppliers(make, ["Echo", "Alpha", "Delta", "Bravo", "Charlie"])

    # ---------- ACT : forward ----------
    p1 = paginate_suppliers(db_session, CursorPageRequest(limit=2, sort_by="name"))
    p2 = paginate_suppliers(
        db_session, CursorPageRequest(limit=2, sort_by="name", cursor=p1.pagination.next_cursor)
    )
    p3 = paginate_suppliers(
        db_session, CursorPageRequest(limit=2, sort_by="name", cursor=p2.pagination.next_cursor)
    )

    # ---------- ASSERT ----------
    assert [s.name for s in p1.data] == ["Alpha", "Bravo"]
    assert p1.pagination.has_more is True
    assert p1.pagination.has_previous is False
    assert p1.pagination.prev_cursor is None

    assert [s.name for s in p2.data] == ["Charlie", "Delta"]
    assert p2.pagination.has_previous is True

    assert [s.name for s in p3.data] == ["Echo"]
    assert p3.pagination.has_more is False
    assert p3.pagination.next_cursor is None

    # ---------- ACT : backward ----------
    back = paginate_suppliers(
        db_session,
        CursorPageRequest(limit=2, sort_by="name", cursor=p3.pagination.prev_cursor, direction="backward"),
    )

    assert [s.name for s in back.data] == ["Charlie", "Delta"]
    assert back.pagination.has_previous is True
    assert back.pagination.has_more is True


def test_ties_on_sort_field_are_split_by_id(db_session, make):
    """
    GIVEN
    - 3 fournisseurs de même nom

    THEN
    - la pagination par nom les sert tous une seule fois, dans l'ordre des id
    """
    created = _suppliers(make, ["Meme", "Meme", "Meme"])

    seen = []
    cursor = None
    for _ in range(3):
        page = paginate_suppliers(db_session, CursorPageRequest(limit=1, sort_by="name", cursor=cursor))
        seen.extend(s.id for s in page.data)
        cursor = page.pagination.next_cursor

    assert seen == [s.id for s in created]
    assert cursor is None


def test_default_sort_and_direction(db_session, make):
    _suppliers(make, ["Zeta", "Alpha"])

    page = paginate_suppliers(db_session, CursorPageRequest())

    assert [s.name for s in page.data] == ["Alpha", "Zeta"]
    assert page.pagination.limit == 20


def test_desc_sort(db_session, make):
    _suppliers(make, ["Alpha", "Bravo", "Charlie"])

    p1 = paginate_suppliers(db_session, CursorPageRequest(limit=2, sort_by="name", sort_direction="desc"))
    p2 = paginate_suppliers(
        db_session,
        CursorPageRequest(limit=2, sort_by="name", sort_direction="desc", cursor=p1.pagination.next_cursor),
    )

    assert [s.name for s in p1.data] == ["Charlie", "Bravo"]
    assert [s.name for s in p2.data] == ["Alpha"]


def test_limit_is_clamped(db_session, make):
    page = paginate_suppliers(db_session, CursorPageRequest(limit=1000))

    assert page.pagination.limit == 100


def test_unknown_sort_field_is_rejected(db_session):
    with pytest.raises(InvalidSortError) as exc:
        paginate_suppliers(db_session, CursorPageRequest(sort_by="email"))

    assert "name" in exc.value.details["sortable"]


def test_cursor_for_another_sort_field_is_rejected(db_session, make):
    _suppliers(make, ["Alpha", "Bravo"])
    page = paginate_suppliers(db_session, CursorPageRequest(limit=1, sort_by="name"))

    with pytest.raises(InvalidCursorError):
        paginate_suppliers(
            db_session, CursorPageRequest(limit=1, sort_by="code", cursor=page.pagination.next_cursor)
        )


def test_malformed_cursor_restarts_from_first_page(db_session, make):
    _suppliers(make, ["Alpha", "Bravo"])

    page = paginate_suppliers(db_session, CursorPageRequest(limit=1, sort_by="name", cursor="%%%"))

    assert [s.name for s in page.data] == ["Alpha"]
    assert page.pagination.cursor is None
    assert page.pagination.has_previous is False


def test_filters_exclude_inactive_suppliers(db_session, make):
    make.supplier(name="Actif")
    make.supplier(name="Inactif", active=False)

    page = paginate_suppliers(db_session, CursorPageRequest())

    assert [s.name for s in page.data] == ["Actif"]
    assert db_session.query(Supplier).count() == 2


def test_offset_pagination_on_audit_log(db_session, make):
    """
    GIVEN
    - 5 lignes d'audit

    THEN
    - page 2 de taille 2 : total 5, 3 pages, page suivante et précédente
    """
    admin = make.user()
    for i in range(5):
        audit.record(db_session, actor=admin, action="TEST", entity_type="Thing", entity_id=i)

    page = paginate_audit_logs_offset(db_session, OffsetPageRequest(page=2, limit=2, sort_by="id", sort_direction="asc"))

    assert [row.entity_id for row in page.data] == ["2", "3"]
    assert page.pagination.total == 5
    assert page.pagination.total_pages == 3
    assert page.pagination.has_next is True
    assert page.pagination.has_previous is True


def test_sort_options_default_direction():
    assert SortOptions(field="name").direction == "desc"


def test_explicit_sort_field_without_direction_is_descending(db_session, make):
    for code in ("FRN-B", "FRN-C", "FRN-A"):
        make.supplier(code=code)

    page = paginate_suppliers(db_session, CursorPageRequest(sort_by="code"))

    assert [s.code for s in page.data] == ["FRN-C", "FRN-B", "FRN-A"]


def test_rows_inserted_between_pages_do_not_shift_the_next_page(db_session, make):
    """
    GIVEN
    - 5 lignes d'audit, créées à une minute d'intervalle (tri par défaut created_at desc)
    - entre la page 1 et la page 2 : une ligne plus récente et une ligne
      de même created_at que la dernière ligne de la page 1

    THEN
    - les pages suivantes donnent exactement les 3 lignes restantes,
      sans doublon ni trou
    """
    admin = make.user()
    t0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    def add(minutes, entity_id):
        row = AuditLog(
            actor_id=admin.id, action="TEST", entity_type="Thing", entity_id=str(entity_id),
            meta={}, created_at=t0 + timedelta(minutes=minutes),
        )
        db_session.add(row)
        db_session.flush()
        return row

    for i in range(5):
        add(i, i)

    # ---------- ACT ----------
    p1 = paginate_audit_logs(db_session, CursorPageRequest(limit=2))
    add(60, "nouvelle")
    add(3, "meme-date")

    seen = []
    cursor = p1.pagination.next_cursor
    while cursor:
        page = paginate_audit_logs(db_session, CursorPageRequest(limit=2, cursor=cursor))
        seen.extend(row.entity_id for row in page.data)
        cursor = page.pagination.next_cursor

    # ---------- ASSERT ----------
    assert [row.entity_id for row in p1.data] == ["4", "3"]
    assert seen == ["2", "1", "0"]
