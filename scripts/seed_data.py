#!/usr/bin/env python3
"""Seed a local database with demo brokers, leads and referrals."""

from __future__ import annotations

import random
from datetime import timedelta

from app import app, db_connect, init_db, new_id, now_iso, utc_now

DEMO_BROKERS = [
    {'firm_name': 'Apex Financial', 'contact_person': 'John Smith', 'email': 'john@apex.example', 'phone_number': '+27215550101'},
    {'firm_name': 'Velocity Brokers', 'contact_person': 'Sarah Connor', 'email': 'sarah@velocity.example', 'phone_number': '+27215550102'},
]

DEMO_LEADS = [
    ('Alice', 'Johnson', 'alice.j@example.com', '+27825550201', 'New'),
    ('Bob', 'Williams', 'bob.w@example.com', '+27825550202', 'Contacted'),
    ('Charlie', 'Brown', 'charlie.b@example.com', '+27825550203', 'Appointment Booked'),
    ('Diana', 'Prince', 'diana.p@example.com', '+27825550204', 'New'),
    ('Edward', 'Norton', 'edward@example.com', '+27825550205', 'Will Done'),
    ('Fiona', 'Gallagher', 'fiona@example.com', '+27825550206', 'Follow-up'),
    ('George', 'Mokoena', 'george@example.com', '+27825550207', 'New'),
    ('Hannah', 'Abbott', 'hannah@example.com', '+27825550208', 'Contacted'),
]

DEMO_REFERRALS = [
    ('Thabo', '+27835550301', 'estate_planning|Needs a will'),
    ('Lerato', '+27835550302', 'financial_advice|Retirement annuity'),
    ('Pieter', '+27835550303', 'estate_planning|Trust setup'),
]


def seed():
    conn = db_connect(); cur = conn.cursor()

    broker_ids = []
    for broker in DEMO_BROKERS:
        cur.execute("SELECT id FROM brokers WHERE email = ?", (broker['email'],))
        row = cur.fetchone()
        if row:
            broker_ids.append(row['id'])
            continue
        broker_id = new_id()
        cur.execute(
            "INSERT INTO brokers (id, firm_name, contact_person, email, phone_number, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, 'Active', ?)",
            (broker_id, broker['firm_name'], broker['contact_person'], broker['email'], broker['phone_number'], now_iso()),
        )
        broker_ids.append(broker_id)

    lead_ids = []
    for first_name, last_name, email, phone, status in DEMO_LEADS:
        cur.execute("SELECT id FROM leads WHERE email = ?", (email,))
        row = cur.fetchone()
        if row:
            lead_ids.append(row['id'])
            continue
        lead_id = new_id()
        cur.execute(
            "INSERT INTO leads (id, broker_id, first_name, last_name, email, phone, status, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (lead_id, random.choice(broker_ids), first_name, last_name, email, phone, status, now_iso()),
        )
        lead_ids.append(lead_id)

    for hours, (first_name, phone, will_status) in zip((6, 20, 72), DEMO_REFERRALS):
        cur.execute("SELECT id FROM referrals WHERE phone_number = ?", (phone,))
        if cur.fetchone():
            continue
        cur.execute(
            "INSERT INTO referrals (id, parent_lead_id, first_name, phone_number, will_status, status, "
            "broker_appointment_scheduled, appointment_date, created_at) VALUES (?, ?, ?, ?, ?, 'Appointment Booked', 1, ?, ?)",
            (new_id(), random.choice(lead_ids), first_name, phone, will_status,
             (utc_now() + timedelta(hours=hours)).isoformat(), now_iso()),
        )

    conn.commit(); conn.close()
    print(f"brokers={len(broker_ids)} leads={len(lead_ids)} referrals={len(DEMO_REFERRALS)}")


if __name__ == '__main__':
    with app.app_context():
        init_db()
        seed()
