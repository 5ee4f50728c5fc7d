"""
Project Map Engine - Map Dashboard

Streamlit page rendering an organization's projects as clustered tiles,
a heatmap or a density grid.
"""

import streamlit as st
import pandas as pd
import plotly.express as px
import pydeck as pdk

# ═══════════════════════════════════════════════════════════════════════════
# PAGE CONFIG
# ═══════════════════════════════════════════════════════════════════════════
st.set_page_config(
    page_title="Project Map",
    page_icon="🗺️",
    layout="wide",
    initial_sidebar_state="expanded"
)

st.markdown("""
<style>
    #MainMenu, header, footer, .stDeployButton {visibility: hidden; display: none;}
    .block-container { padding: 1rem 2rem; }
</style>
""", unsafe_allow_html=True)

from core.engine import get_map_engine
from core.models import BoundingBox

MAP_STYLE = "https://basemaps.cartocdn.com/gl/dark-matter-gl-style/style.json"
COLOR_RGB = {
    "red": [230, 57, 70],
    "yellow": [244, 162, 97],
    "green": [42, 157, 143],
    "gray": [150, 150, 150],
}


@st.cache_resource
def load_engine():
    return get_map_engine()


engine = load_engine()

# ═══════════════════════════════════════════════════════════════════════════
# SIDEBAR
# ═══════════════════════════════════════════════════════════════════════════
st.sidebar.title("🗺️ Project Map")
st.sidebar.markdown("---")

organizations = engine.store.list_organizations()
if not organizations:
    st.warning("No projects found. Import projects and run tools/geocode_projects.py first.")
    st.stop()

org_id = st.sidebar.selectbox("Organization", organizations)
layer = st.sidebar.radio("Layer", ["Projects", "Heatmap", "Density"])
zoom = st.sidebar.slider("Zoom", min_value=0, max_value=18, value=5)

st.sidebar.markdown("**Viewport**")
col_a, col_b = st.sidebar.columns(2)
north = col_a.number_input("North", value=70.0)
south = col_b.number_input("South", value=40.0)
west = col_a.number_input("West", value=20.0)
east = col_b.number_input("East", value=60.0)

try:
    viewport = BoundingBox(north=north, south=south, east=east, west=west)
except ValueError as e:
    st.error(f"Invalid viewport: {e}")
    st.stop()

view = pdk.ViewState(
    latitude=viewport.center.latitude,
    longitude=viewport.center.longitude,
    zoom=zoom,
)

# ═══════════════════════════════════════════════════════════════════════════
# LAYERS
# ═══════════════════════════════════════════════════════════════════════════
if layer == "Projects":
    rows = []
    tiles = engine.tiles.tiles_for_bounds(viewport, zoom)
    if len(tiles) > 64:
        st.warning(f"Viewport covers {len(tiles)} tiles; zoom out or shrink it.")
        st.stop()
    for tile in tiles:
        collection = engine.tile(org_id, tile.z, tile.x, tile.y)
        for feature in collection["features"]:
            lon, lat = feature["geometry"]["coordinates"]
            props = feature["properties"]
            rows.append({
                "lon": lon,
                "lat": lat,
                "label": f"{props['point_count']} projects" if props.get("cluster") else props["name"],
                "count": props.get("point_count", 1),
                "color": COLOR_RGB.get(props["status_color"], COLOR_RGB["gray"]),
                "status_color": props["status_color"],
            })

    df = pd.DataFrame(rows)
    if df.empty:
        st.info("No projects in this viewport.")
    else:
        scatter = pdk.Layer(
            "ScatterplotLayer",
            df,
            get_position=["lon", "lat"],
            get_fill_color="color",
            get_radius="count * 2000",
            radius_min_pixels=5,
            radius_max_pixels=40,
            pickable=True,
        )
        st.pydeck_chart(pdk.Deck(
            layers=[scatter],
            initial_view_state=view,
            map_style=MAP_STYLE,
            tooltip={"text": "{label}"}
        ), height=560)

        summary = df.groupby("status_color", as_index=False)["count"].sum()
        fig = px.bar(summary, x="status_color", y="count", color="status_color",
                     color_discrete_map={k: f"rgb{tuple(v)}" for k, v in COLOR_RGB.items()})
        st.plotly_chart(fig, use_container_width=True)

elif layer == "Heatmap":
    metric = st.sidebar.selectbox("Metric", ["budget", "problems", "activity"])
    payload = engine.heatmap(org_id, metric=metric, bounds=viewport.to_dict(), zoom=zoom)
    df = pd.DataFrame(payload["data"])

    stats = payload["stats"]
    c1, c2, c3 = st.columns(3)
    c1.metric("Projects", stats["total_projects"])
    c2.metric("Points", stats["total_points"])
    c3.metric("Degraded", stats["degraded_projects"])

    if df.empty:
        st.info("No heat points for this metric.")
    else:
        heat = pdk.Layer(
            "HeatmapLayer",
            df,
            get_position=["lng", "lat"],
            get_weight="intensity",
            radius_pixels=40,
        )
        st.pydeck_chart(pdk.Deck(
            layers=[heat],
            initial_view_state=view,
            map_style=MAP_STYLE,
        ), height=560)

        fig = px.histogram(df, x="intensity", color="zone", nbins=20)
        st.plotly_chart(fig, use_container_width=True)

else:
    payload = engine.density_map(org_id, bounds=viewport.to_dict())
    df = pd.DataFrame(payload["data"])
    if df.empty:
        st.info("No projects in this viewport.")
    else:
        grid = pdk.Layer(
            "ColumnLayer",
            df,
            get_position=["lng", "lat"],
            get_elevation="count",
            elevation_scale=2000,
            radius=4000,
            get_fill_color="[255, 140 * (1 - intensity), 0, 200]",
            pickable=True,
        )
        st.pydeck_chart(pdk.Deck(
            layers=[grid],
            initial_view_state=view,
            map_style=MAP_STYLE,
            tooltip={"text": "{count} projects"}
        ), height=560)
        st.caption(f"Densest cell: {payload['max_count']} projects")
