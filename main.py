import csv
import io
import logging
from datetime import datetime
from functools import lru_cache
from typing import List
from urllib.parse import quote

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from config import configure_logging, settings
from events import ExpenseAdded, ExpenseRemoved, InviteeAdded
from models import (Expense, ExpenseCreate, ExpenseResult, Group, GroupCreate, GroupDetail,
                    GroupDetailsRequest, GroupSummary, Invitee, InviteeCreate, Member,
                    MemberCreate)
from notifications import (MockSmsGateway, NotificationService, SmsDeliveryError, SmsGateway,
                           SmsMessage)
from settlement import calculate_summary, compute_balances, minimize_settlements
from storage import GroupRepository, InMemoryStorage, JsonFileStorage
from utils import format_currency, format_phone, is_valid_phone, normalize_phone, parse_currency

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_storage() -> GroupRepository:
    if settings.STORAGE_PATH:
        return JsonFileStorage(settings.STORAGE_PATH)
    return InMemoryStorage()


@lru_cache
def get_gateway() -> SmsGateway:
    return MockSmsGateway(settings.SMS_LOG_PATH)


def get_notifier(storage: GroupRepository = Depends(get_storage),
                 gateway: SmsGateway = Depends(get_gateway)) -> NotificationService:
    return NotificationService(storage,
                               gateway,
                               throttle_seconds=settings.NOTIFY_THROTTLE_SECONDS,
                               currency_symbol=settings.CURRENCY_SYMBOL)


def _get_group(storage: GroupRepository, group_id: str) -> Group:
    group = storage.get_group(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


def _summary(storage: GroupRepository, group_id: str) -> GroupSummary:
    return calculate_summary(group_id,
                             storage.load_members(group_id),
                             storage.load_expenses(group_id),
                             storage.load_invitees(group_id))


def _attachment(filename: str) -> str:
    filename = filename.replace(' ', '_')
    fallback = filename.encode('ascii', 'ignore').decode('ascii').replace('"', '')
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def _validation_message(e: ValidationError) -> str:
    return "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())


@app.get("/api/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


@app.post("/api/groups", response_model=Group, status_code=201)
async def create_group(data: GroupCreate,
                       storage: GroupRepository = Depends(get_storage)):
    fields = data.model_dump(exclude_none=True)
    try:
        group = Group(**fields)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_message(e))

    storage.create_group(group)
    logger.info("Created group %s (%s)", group.id, group.name)
    return group


@app.get("/api/groups", response_model=List[Group])
async def list_groups(storage: GroupRepository = Depends(get_storage)):
    return storage.list_groups()


@app.get("/api/groups/{group_id}", response_model=GroupDetail)
async def view_group(group_id: str, storage: GroupRepository = Depends(get_storage)):
    group = _get_group(storage, group_id)
    return GroupDetail(group=group,
                       members=storage.load_members(group_id),
                       invitees=storage.load_invitees(group_id),
                       expenses=storage.load_expenses(group_id))


@app.delete("/api/groups/{group_id}")
async def delete_group(group_id: str, storage: GroupRepository = Depends(get_storage)):
    if not storage.delete_group(group_id):
        raise HTTPException(status_code=404, detail="Group not found")

    logger.info("Deleted group %s", group_id)
    return {"success": True, "message": "Group deleted"}


@app.post("/api/groups/{group_id}/members", response_model=Member, status_code=201)
async def add_member(group_id: str,
                     data: MemberCreate,
                     storage: GroupRepository = Depends(get_storage)):
    _get_group(storage, group_id)

    try:
        member = Member(name=data.name, phone=data.phone)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_message(e))

    members = storage.load_members(group_id)
    if any(m.phone == member.phone for m in members):
        raise HTTPException(status_code=409, detail="Already a member of this group")

    members.append(member)
    storage.save_members(group_id, members)

    with storage.transaction():
        invitees = storage.load_invitees(group_id)
        remaining = [i for i in invitees if i.phone != member.phone]
        if len(remaining) != len(invitees):
            storage.save_invitees(group_id, remaining)
            logger.info("Invitee %s joined group %s", format_phone(member.phone), group_id)

    return member


@app.post("/api/groups/{group_id}/invitees", response_model=Invitee, status_code=201)
async def add_invitee(group_id: str,
                      data: InviteeCreate,
                      background_tasks: BackgroundTasks,
                      storage: GroupRepository = Depends(get_storage),
                      notifier: NotificationService = Depends(get_notifier)):
    _get_group(storage, group_id)

    try:
        invitee = Invitee(phone=data.phone, name=data.name)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_message(e))

    if any(m.phone == invitee.phone for m in storage.load_members(group_id)):
        raise HTTPException(status_code=409, detail="Already a member of this group")

    with storage.transaction():
        invitees = storage.load_invitees(group_id)
        if any(i.phone == invitee.phone for i in invitees):
            raise HTTPException(status_code=409, detail="Already invited to this group")

        invitees.append(invitee)
        storage.save_invitees(group_id, invitees)

    background_tasks.add_task(notifier.handle,
                              InviteeAdded(group_id=group_id, phone=invitee.phone))
    return invitee


@app.post("/api/groups/{group_id}/expenses", response_model=ExpenseResult, status_code=201)
async def add_expense(group_id: str,
                      data: ExpenseCreate,
                      background_tasks: BackgroundTasks,
                      storage: GroupRepository = Depends(get_storage),
                      notifier: NotificationService = Depends(get_notifier)):
    _get_group(storage, group_id)

    try:
        amount_minor = parse_currency(data.amount)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if amount_minor <= 0:
        raise HTTPException(status_code=400, detail="Amount must be greater than 0")

    members = storage.load_members(group_id)
    invitees = storage.load_invitees(group_id)
    known = {m.phone for m in members} | {i.phone for i in invitees}

    if normalize_phone(data.payer_phone) not in known:
        raise HTTPException(status_code=400,
                            detail="Payer must be a member or invitee of the group")

    for phone in data.participant_phones:
        if normalize_phone(phone) not in known:
            raise HTTPException(
                status_code=400,
                detail="All participants must be members or invitees of the group")

    try:
        expense = Expense(description=data.description,
                          amount_minor=amount_minor,
                          payer_phone=data.payer_phone,
                          participants=data.participant_phones)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=_validation_message(e))

    expenses = storage.load_expenses(group_id)
    expenses.append(expense)
    storage.save_expenses(group_id, expenses)
    logger.info("Expense %s (%s) added to group %s",
                expense.id, format_currency(expense.amount_minor), group_id)

    balances = compute_balances([m.phone for m in members], expenses)
    background_tasks.add_task(notifier.handle,
                              ExpenseAdded(group_id=group_id,
                                           expense=expense,
                                           balances=balances,
                                           settlements=minimize_settlements(balances)))

    return ExpenseResult(expense=expense,
                         summary=calculate_summary(group_id, members, expenses, invitees))


@app.delete("/api/groups/{group_id}/expenses/{expense_id}", response_model=GroupSummary)
async def remove_expense(group_id: str,
                         expense_id: str,
                         background_tasks: BackgroundTasks,
                         storage: GroupRepository = Depends(get_storage),
                         notifier: NotificationService = Depends(get_notifier)):
    _get_group(storage, group_id)

    expenses = storage.load_expenses(group_id)
    remaining = [e for e in expenses if e.id != expense_id]
    if len(remaining) == len(expenses):
        raise HTTPException(status_code=404, detail="Expense not found")

    storage.save_expenses(group_id, remaining)
    logger.info("Expense %s removed from group %s", expense_id, group_id)

    members = storage.load_members(group_id)
    balances = compute_balances([m.phone for m in members], remaining)
    background_tasks.add_task(notifier.handle,
                              ExpenseRemoved(group_id=group_id,
                                             expense_id=expense_id,
                                             balances=balances,
                                             settlements=minimize_settlements(balances)))

    return _summary(storage, group_id)


@app.get("/api/groups/{group_id}/summary", response_model=GroupSummary)
async def group_summary(group_id: str, storage: GroupRepository = Depends(get_storage)):
    _get_group(storage, group_id)
    return _summary(storage, group_id)


@app.get("/api/groups/{group_id}/export/csv")
async def export_csv(group_id: str, storage: GroupRepository = Depends(get_storage)):
    group = _get_group(storage, group_id)
    members = storage.load_members(group_id)
    expenses = storage.load_expenses(group_id)
    summary = _summary(storage, group_id)
    names = {b.phone: b.name for b in summary.balances}

    def money(amount_minor: int) -> str:
        return format_currency(amount_minor, settings.CURRENCY_SYMBOL)

    output = io.StringIO()
    writer = csv.writer(output)

    writer.writerow([f"{settings.APP_NAME} - group export"])
    writer.writerow([f"Group: {group.name}"])
    writer.writerow([f"Created: {group.created_at.strftime('%Y-%m-%d %H:%M')}"])
    writer.writerow([])

    writer.writerow(["MEMBERS"])
    writer.writerow(["Name", "Phone"])
    for member in members:
        writer.writerow([member.name, format_phone(member.phone)])
    writer.writerow([])

    writer.writerow(["EXPENSES"])
    writer.writerow(["Date", "Description", "Amount", "Paid by", "Split between"])
    for expense in expenses:
        writer.writerow([
            expense.created_at.strftime('%Y-%m-%d'), expense.description,
            money(expense.amount_minor),
            names.get(expense.payer_phone, expense.payer_phone),
            ", ".join(names.get(p, p) for p in expense.participants)
        ])
    writer.writerow(["", "Total", money(summary.total_minor), "", ""])
    writer.writerow([])

    writer.writerow(["BALANCES"])
    writer.writerow(["Participant", "Balance"])
    for balance in summary.balances:
        writer.writerow([balance.name, money(balance.balance_minor)])
    writer.writerow([])

    writer.writerow(["PAYMENTS"])
    writer.writerow(["From", "To", "Amount"])
    for payment in summary.payments:
        writer.writerow([payment.from_name, payment.to_name, money(payment.amount_minor)])

    return StreamingResponse(
        io.BytesIO(output.getvalue().encode('utf-8-sig')),
        media_type="text/csv",
        headers={
            "Content-Disposition":
            _attachment(f"settlement_{group.name}.csv")
        })


def _table(data, col_widths, right_columns=()):
    table = Table(data, colWidths=col_widths)
    style = [
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#e5e7eb')),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.HexColor('#1f2937')),
        ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTNAME', (0, 1), (-1, -1), 'Helvetica'),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('BOTTOMPADDING', (0, 0), (-1, 0), 8),
        ('TOPPADDING', (0, 0), (-1, 0), 8),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#d1d5db')),
    ]
    for col in right_columns:
        style.append(('ALIGN', (col, 0), (col, -1), 'RIGHT'))
    table.setStyle(TableStyle(style))
    return table


@app.get("/api/groups/{group_id}/export/pdf")
async def export_pdf(group_id: str, storage: GroupRepository = Depends(get_storage)):
    group = _get_group(storage, group_id)
    members = storage.load_members(group_id)
    expenses = storage.load_expenses(group_id)
    summary = _summary(storage, group_id)
    names = {b.phone: b.name for b in summary.balances}

    def money(amount_minor: int) -> str:
        return format_currency(amount_minor, settings.CURRENCY_SYMBOL)

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4, title=f"{group.name} settlement")

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle('GroupTitle',
                                 parent=styles['Heading1'],
                                 fontSize=18,
                                 textColor=colors.HexColor(group.theme_color),
                                 spaceAfter=12)
    heading_style = ParagraphStyle('SectionHeading',
                                   parent=styles['Heading2'],
                                   fontSize=14,
                                   textColor=colors.HexColor('#374151'),
                                   spaceAfter=10,
                                   spaceBefore=14)
    normal_style = styles['Normal']

    elements = [
        Paragraph(settings.APP_NAME, title_style),
        Paragraph(f"Group: {group.name}", normal_style),
        Paragraph(f"Created: {group.created_at.strftime('%Y-%m-%d %H:%M')}", normal_style),
        Spacer(1, 0.5 * cm),
    ]

    elements.append(Paragraph("Members", heading_style))
    member_data = [["Name", "Phone"]]
    member_data += [[m.name, format_phone(m.phone)] for m in members]
    elements.append(_table(member_data, [9 * cm, 6 * cm]))

    elements.append(Paragraph("Expenses", heading_style))
    expense_data = [["Date", "Description", "Amount", "Paid by", "Split between"]]
    for expense in expenses:
        expense_data.append([
            expense.created_at.strftime('%Y-%m-%d'), expense.description,
            money(expense.amount_minor),
            names.get(expense.payer_phone, expense.payer_phone),
            ", ".join(names.get(p, p) for p in expense.participants)
        ])
    expense_data.append(["", "Total", money(summary.total_minor), "", ""])
    elements.append(_table(expense_data,
                           [2.5 * cm, 4 * cm, 2.5 * cm, 3 * cm, 3 * cm],
                           right_columns=(2,)))

    elements.append(Paragraph("Balances", heading_style))
    balance_data = [["Participant", "Balance"]]
    balance_data += [[b.name, money(b.balance_minor)] for b in summary.balances]
    elements.append(_table(balance_data, [10 * cm, 5 * cm], right_columns=(1,)))

    elements.append(Paragraph("Payments", heading_style))
    payment_data = [["From", "To", "Amount"]]
    payment_data += [[p.from_name, p.to_name, money(p.amount_minor)] for p in summary.payments]
    if len(payment_data) == 1:
        payment_data.append(["All settled up!", "", ""])
    elements.append(_table(payment_data, [5 * cm, 5 * cm, 5 * cm], right_columns=(2,)))

    doc.build(elements)
    buffer.seek(0)

    return StreamingResponse(
        buffer,
        media_type="application/pdf",
        headers={
            "Content-Disposition":
            _attachment(f"settlement_{group.name}.pdf")
        })


@app.post("/api/sms/send-group-details", response_model=SmsMessage)
async def send_group_details(data: GroupDetailsRequest,
                             notifier: NotificationService = Depends(get_notifier)):
    if not is_valid_phone(data.phone):
        raise HTTPException(status_code=400, detail="Invalid phone number")

    try:
        sms = notifier.send_group_details(data.group_id, normalize_phone(data.phone))
    except SmsDeliveryError as e:
        logger.error("Could not send group details for %s: %s", data.group_id, e)
        raise HTTPException(status_code=502, detail="Failed to send SMS")

    if sms is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return sms


@app.get("/api/sms/history", response_model=List[SmsMessage])
async def sms_history(gateway: SmsGateway = Depends(get_gateway)):
    return gateway.history()


@app.delete("/api/sms/history")
async def clear_sms_history(gateway: SmsGateway = Depends(get_gateway)):
    gateway.clear()
    return {"success": True, "message": "SMS history cleared"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=5000)
