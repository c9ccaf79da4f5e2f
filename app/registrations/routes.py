from __future__ import annotations

from flask import abort, jsonify, request, send_file
from flask_login import current_user, login_required

from app.core.models import UserRole
from app.core.permissions import require_role
from app.registrations import registrations_bp
from app.registrations.services import (
    create_registration,
    list_packages,
    list_registrations,
    open_stored_file,
    parse_payload,
    perform_action,
    registration_detail,
    review_queue,
)


def _uploads() -> list[tuple[str, object, str | None]]:
    """Uploaded files as ``(slot, file, title)``; titles pair with ``additional`` files in order."""
    titles = request.form.getlist("title")
    uploads = []
    for key in request.files.keys():
        for file_obj in request.files.getlist(key):
            title = None
            if key == "additional":
                title = titles.pop(0) if titles else None
            uploads.append((key, file_obj, title))
    return uploads


@registrations_bp.get("/packages")
def packages():
    return jsonify(list_packages())


@registrations_bp.get("/registrations")
@login_required
def registrations():
    return jsonify(list_registrations(current_user, status=request.args.get("status")))


@registrations_bp.get("/registrations/review-queue")
@login_required
@require_role(UserRole.STAFF.value)
def registrations_review_queue():
    return jsonify(review_queue())


@registrations_bp.post("/registrations")
@login_required
def registration_create():
    payload = parse_payload(request.form, request.get_json(silent=True))
    case = create_registration(payload, request.files.get("payment_receipt"), current_user)
    return jsonify(registration_detail(case.id, current_user)), 201


@registrations_bp.get("/registrations/<case_id>")
@login_required
def registration_show(case_id: str):
    return jsonify(registration_detail(case_id, current_user))


@registrations_bp.post("/registrations/<case_id>/actions/<action>")
@login_required
def registration_action(case_id: str, action: str):
    payload = parse_payload(request.form, request.get_json(silent=True))
    case = perform_action(case_id, action, current_user, payload, _uploads())
    return jsonify(registration_detail(case.id, current_user))


@registrations_bp.get("/files/<path:storage_ref>")
@login_required
def stored_file(storage_ref: str):
    if not current_user.is_staff and not storage_ref.startswith(f"{current_user.id}/"):
        abort(403)
    try:
        path = open_stored_file(storage_ref)
    except FileNotFoundError:
        abort(404)
    return send_file(path)
