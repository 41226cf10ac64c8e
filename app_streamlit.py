import os
import time
import uuid
from datetime import date

import requests
import streamlit as st
from dotenv import load_dotenv

from config import get_settings
from fallbacks import FallbackCatalog
from protocol_runtime import Phase, ProtocolRuntime
from schemas import (
    BoundariesStyle,
    FocusArea,
    QuestSet,
    ResetProtocol,
    ScenarioType,
    ScriptSet,
    TriggerType,
)

load_dotenv()

# --------------------- API Client --------------------- #

API_BASE = os.getenv("GROUNDWORK_API_BASE", "http://localhost:8000")
API_TOKEN = os.getenv("GROUNDWORK_API_TOKEN")


class RateLimitedError(RuntimeError):
    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


def _headers() -> dict:
    headers = {"X-Device-Id": st.session_state.device_id}
    if API_TOKEN:
        headers["Authorization"] = f"Bearer {API_TOKEN}"
    return headers


def call_api(path: str, payload: dict) -> dict:
    """
    Helper to call the Groundwork FastAPI.

    - path: e.g. "/ai/quests"
    - payload: dict that will be sent as JSON

    Raises RateLimitedError on 429, RuntimeError on any other 4xx/5xx.
    """
    url = f"{API_BASE}{path}"
    try:
        resp = requests.post(url, json=payload, headers=_headers(), timeout=60)
    except requests.RequestException as e:
        raise RuntimeError(f"API {path} request failed: {e}")

    if resp.status_code == 429:
        retry_after = int(resp.headers.get("Retry-After", "1"))
        raise RateLimitedError(f"Too many requests, try again in {retry_after}s", retry_after)

    if resp.status_code >= 400:
        try:
            data = resp.json()
        except ValueError:
            data = resp.text
        raise RuntimeError(f"API {path} failed: {resp.status_code} – {data}")

    return resp.json()


# --------------------- Streamlit setup --------------------- #

st.set_page_config(
    page_title="Groundwork – Daily Coach",
    page_icon="🌱",
    layout="wide",
)

st.title("🌱 Groundwork")
st.caption("Daily quests, conversation scripts and a guided reset when things get heavy.")


# --------------------- Session State helpers --------------------- #

def init_state():
    if "device_id" not in st.session_state:
        st.session_state.device_id = uuid.uuid4().hex
    if "quest_set" not in st.session_state:
        st.session_state.quest_set = None
    if "script_set" not in st.session_state:
        st.session_state.script_set = None
    if "runtime" not in st.session_state:
        st.session_state.runtime = ProtocolRuntime.from_settings(get_settings())


init_state()

offline_catalog = FallbackCatalog()


def new_runtime():
    st.session_state.runtime = ProtocolRuntime.from_settings(get_settings())


def reset_app():
    st.session_state.clear()
    init_state()


def show_intervention(message: str):
    st.error(message)


# --------------------- UI Sections --------------------- #

with st.sidebar:
    st.header("⚙️ Controls")
    if st.button("🔄 Reset all", use_container_width=True):
        reset_app()
        st.rerun()

    st.markdown("### Debug info")
    runtime: ProtocolRuntime = st.session_state.runtime
    st.json(
        {
            "api_base": API_BASE,
            "authenticated": bool(API_TOKEN),
            "quests_source": st.session_state.quest_set.source.value if st.session_state.quest_set else None,
            "script_source": st.session_state.script_set.source.value if st.session_state.script_set else None,
            "reset_phase": runtime.phase.value,
        },
        expanded=False,
    )

tab_quests, tab_scripts, tab_reset = st.tabs(["Check-in & quests", "Scripts", "Reset"])


# ----------------------------------------------------
# Check-in -> quests
# ----------------------------------------------------
with tab_quests:
    st.subheader("How are you today?")

    energy = st.slider("Energy", 1, 10, 5)
    stress = st.slider("Stress", 1, 10, 5)
    sleep_hours = st.number_input("Sleep (hours)", min_value=0.0, max_value=24.0, value=7.0, step=0.5)
    focus = st.selectbox("Focus", [f.value for f in FocusArea])
    notes = st.text_area("Anything on your mind?", height=100)

    if st.button("Get today's quests", type="primary"):
        try:
            data = call_api(
                "/ai/quests",
                {
                    "daily_state": {
                        "date": date.today().isoformat(),
                        "energy": energy,
                        "stress": stress,
                        "sleep_hours": sleep_hours,
                        "focus": focus,
                        "notes": notes.strip() or None,
                    },
                },
            )
            st.session_state.quest_set = QuestSet(**data)
        except RateLimitedError as e:
            st.warning(str(e))
        except RuntimeError as e:
            st.error(f"Failed to get quests: {e}")

    quest_set: QuestSet = st.session_state.quest_set
    if quest_set is not None:
        if quest_set.intervention:
            show_intervention(quest_set.message)
        else:
            st.markdown(f"**State:** {quest_set.state_assessment.state.value} – {quest_set.state_assessment.notes}")
            for quest in quest_set.quests:
                label = "⭐ Main quest" if quest.type.value == "main" else "Side quest"
                with st.expander(f"{label}: {quest.title}", expanded=quest.type.value == "main"):
                    st.caption(quest.why)
                    for i, step in enumerate(quest.steps, start=1):
                        st.markdown(f"{i}. {step}")
                    st.info(f"If it's too much: {quest.fail_safe}")


# ----------------------------------------------------
# Conversation scripts
# ----------------------------------------------------
with tab_scripts:
    st.subheader("What are you facing?")

    scenario = st.selectbox("Scenario", [s.value for s in ScenarioType])
    boundaries = st.radio("Boundary style", [b.value for b in BoundariesStyle], horizontal=True)
    context = st.text_area("What happened? (optional)", height=100, key="script_context")

    if st.button("Get scripts", type="primary"):
        try:
            data = call_api(
                "/ai/script",
                {
                    "scenario_type": scenario,
                    "context_summary": context.strip() or None,
                    "user_profile": {"boundaries_style": boundaries},
                },
            )
            st.session_state.script_set = ScriptSet(**data)
        except RateLimitedError as e:
            st.warning(str(e))
        except RuntimeError as e:
            st.error(f"Failed to get scripts: {e}")

    script_set: ScriptSet = st.session_state.script_set
    if script_set is not None:
        if script_set.intervention:
            show_intervention(script_set.message)
        else:
            variants = script_set.variants
            st.markdown(f"**Short:** {variants.short}")
            st.markdown(f"**Neutral:** {variants.neutral}")
            st.markdown(f"**Boundary:** {variants.boundary}")
            st.markdown(f"**Exit:** {variants.exit}")
            if script_set.tone_notes:
                st.caption(script_set.tone_notes)


# ----------------------------------------------------
# Reset protocol playback
# ----------------------------------------------------
with tab_reset:
    runtime: ProtocolRuntime = st.session_state.runtime

    if runtime.phase is Phase.select:
        st.subheader("What's hitting you right now?")
        trigger = st.radio("Trigger", [t.value for t in TriggerType], horizontal=True)
        context = st.text_input("In a few words (optional)", key="reset_context")

        if runtime.intervention_message:
            show_intervention(runtime.intervention_message)

        if st.button("Start reset", type="primary"):
            runtime.choose_trigger(TriggerType(trigger))
            ticket = runtime.request_steps()
            try:
                data = call_api(
                    "/ai/reset",
                    {"trigger": trigger, "context_summary": context.strip() or None},
                )
                protocol = ResetProtocol(**data)
            except RuntimeError as e:
                # offline: play the static protocol instead
                st.caption(f"Using offline protocol ({e})")
                protocol = offline_catalog.reset_protocol(TriggerType(trigger))

            if runtime.deliver(ticket, protocol):
                st.rerun()
            elif runtime.intervention_message:
                show_intervention(runtime.intervention_message)

    elif runtime.phase is Phase.running:
        step = runtime.current_step
        st.subheader(f"Step {runtime.step_index + 1} of {len(runtime.steps)} · {step.title}")
        st.write(step.content)
        st.progress(runtime.step_progress(), text=f"{runtime.time_remaining()}s")
        st.progress(runtime.overall_progress())

        col_skip, col_pause, col_close = st.columns(3)
        with col_skip:
            if st.button("Next ▶"):
                runtime.skip()
                st.rerun()
        with col_pause:
            if runtime.paused:
                if st.button("Resume"):
                    runtime.resume()
                    st.rerun()
            elif st.button("Pause"):
                runtime.pause()
                st.rerun()
        with col_close:
            if st.button("Close ✕"):
                runtime.close()
                st.rerun()

        if not runtime.paused:
            time.sleep(1)
            runtime.tick()
            st.rerun()

    else:
        if runtime.phase is Phase.complete:
            st.success("You made it through. 🌿")
            if runtime.trust_anchor:
                st.markdown(f"> {runtime.trust_anchor}")
        if st.button("Start another reset"):
            new_runtime()
            st.rerun()
