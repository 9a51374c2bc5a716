from __future__ import annotations

import streamlit as st

from fishplant.config import get_settings
from fishplant.db import get_conn, ensure_schema
from fishplant.services.demo_data import upsert_reference_data
from fishplant.services.storage import capacity_status

st.set_page_config(page_title="Fish Plant Stock", page_icon="🐟", layout="wide")

st.title("🐟 Fish Plant: Sorted Stock & Outlet Fulfillment")
st.caption("Size-class stock across cold rooms, FIFO allocation to outlet orders, and approved inter-room transfers.")

settings = get_settings()
conn = get_conn(settings)
ensure_schema(conn)
upsert_reference_data(conn)

with st.sidebar:
    st.subheader("Environment")
    st.write(f"**Data directory:** `{settings.data_dir}`")
    st.write(f"**Database:** `{settings.db_path.name}`")

usage = capacity_status(conn)
if usage:
    cols = st.columns(len(usage))
    for col, u in zip(cols, usage):
        col.metric(u.name, f"{u.current_usage_kg:,.1f} kg", f"{u.available_capacity_kg:,.1f} kg free", delta_color="off")

st.info(
    "Use the left sidebar navigation. Start with **🧪 Data Management** to load demo data, then try **Sorting**, **Orders** and **Transfers**.",
    icon="ℹ️",
)
