from __future__ import annotations

import streamlit as st

from fishplant.config import get_settings
from fishplant.logging_config import configure_logging

st.set_page_config(page_title="Fish Plant Stock", page_icon="🐟", layout="wide")
configure_logging(get_settings().log_level)

pages = [
    st.Page("home.py", title="Home", icon="🏠"),
    st.Page("pages/1_📦_Inventory.py", title="Inventory", icon="📦"),
    st.Page("pages/2_🧮_Sorting.py", title="Sorting", icon="🧮"),
    st.Page("pages/3_🛒_Orders.py", title="Orders", icon="🛒"),
    st.Page("pages/4_🚚_Transfers.py", title="Transfers", icon="🚚"),
    st.Page("pages/5_🗑️_Disposal.py", title="Disposal", icon="🗑️"),
    st.Page("pages/6_🧪_Data_Management.py", title="Data Management", icon="🧪"),
]

st.navigation(pages).run()
