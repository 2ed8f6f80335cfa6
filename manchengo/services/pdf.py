from __future__ import annotations

from decimal import Decimal

from fpdf import FPDF
from fpdf.enums import XPos, YPos

from manchengo.app.db.models.models_v1 import PurchaseOrder
from manchengo.app.settings import COMPANY_ADDRESS, COMPANY_NAME, VAT_RATE

COLUMNS = [
    ("Code", 25),
    ("Désignation", 65),
    ("Unité", 15),
    ("Qté", 20),
    ("P.U. HT", 30),
    ("Total HT", 35),
]


def _latin1(text) -> str:
    # Polices core FPDF : latin-1 uniquement
    return str(text if text is not None else "").encode("latin-1", "replace").decode("latin-1")


def _money(value: Decimal) -> str:
    return f"{value:,.2f} DA".replace(",", " ")


def render_purchase_order_pdf(po: PurchaseOrder) -> bytes:
    pdf = FPDF()
    pdf.add_page()

    # En-tête
    pdf.set_font("Helvetica", "B", 16)
    pdf.cell(0, 10, "BON DE COMMANDE", align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.set_font("Helvetica", size=10)
    pdf.cell(0, 6, _latin1(f"N° {po.reference}"), align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(6)

    pdf.set_font("Helvetica", "B", 11)
    pdf.cell(0, 6, _latin1(COMPANY_NAME), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.set_font("Helvetica", size=10)
    pdf.cell(0, 6, _latin1(COMPANY_ADDRESS), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.cell(0, 6, f"Date : {po.created_at:%d/%m/%Y}", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    if po.expected_delivery:
        pdf.cell(
            0, 6, _latin1(f"Livraison prévue : {po.expected_delivery:%d/%m/%Y}"),
            new_x=XPos.LMARGIN, new_y=YPos.NEXT,
        )
    pdf.ln(4)

    # Fournisseur
    supplier = po.supplier
    pdf.set_font("Helvetica", "B", 11)
    pdf.cell(0, 6, "Fournisseur", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.set_font("Helvetica", size=10)
    for line in (
        f"{supplier.name} ({supplier.code})",
        supplier.address,
        f"NIF : {supplier.nif}" if supplier.nif else None,
        f"Tél : {supplier.phone}" if supplier.phone else None,
        supplier.email,
    ):
        if line:
            pdf.cell(0, 6, _latin1(line), new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.ln(4)

    # Lignes
    pdf.set_font("Helvetica", "B", 9)
    for title, width in COLUMNS:
        pdf.cell(width, 7, _latin1(title), border=1, align="C")
    pdf.ln()

    pdf.set_font("Helvetica", size=9)
    for item in po.items:
        mp = item.product_mp
        values = [
            mp.code,
            mp.name[:38],
            mp.unit,
            str(item.quantity),
            _money(item.unit_price),
            _money(item.total_ht),
        ]
        for (_, width), value in zip(COLUMNS, values):
            pdf.cell(width, 7, _latin1(value), border=1)
        pdf.ln()

    # Totaux
    total_ht = Decimal(po.total_ht)
    tva = (total_ht * Decimal(str(VAT_RATE))).quantize(Decimal("0.01"))
    label_width = sum(w for _, w in COLUMNS[:-1])
    pdf.set_font("Helvetica", "B", 9)
    for label, value in (
        ("Total HT", total_ht),
        (f"TVA {int(VAT_RATE * 100)}%", tva),
        ("Total TTC", total_ht + tva),
    ):
        pdf.cell(label_width, 7, label, border=1, align="R")
        pdf.cell(COLUMNS[-1][1], 7, _latin1(_money(value)), border=1, new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    if po.notes:
        pdf.ln(4)
        pdf.set_font("Helvetica", "I", 9)
        pdf.multi_cell(0, 5, _latin1(f"Notes : {po.notes}"))

    # Signatures
    pdf.ln(12)
    pdf.set_font("Helvetica", size=10)
    pdf.cell(95, 6, "Le Responsable Approvisionnement")
    pdf.cell(95, 6, "Le Fournisseur", new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    return bytes(pdf.output())
