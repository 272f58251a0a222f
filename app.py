import os
import logging
import streamlit as st
import pandas as pd
from dotenv import load_dotenv

from tidyml.config import AnalysisConfig
from tidyml.exceptions import (
    AnalysisError, ValidationError, ComputationError, InsufficientDataError,
    TargetConstantError, ExcessiveMissingDataError
)
from tidyml.preprocessing import preprocessing
from tidyml.model_trainer import build_model, fine_tuning, MODELS, TUNERS
from tidyml.metrics import metrics_for_task, DEFAULT_METRICS
from tidyml.sensitivity import sensitivity_analysis, Method
from tidyml.results import summarize_performance
from tidyml.report_generator import generate_markdown_report
from tidyml.utils import save_analysis


# Load environment variables
load_dotenv()
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

# Page config
st.set_page_config(page_title="TidyML Analyst", layout="wide", page_icon="🔍")

st.markdown("""
<style>
    .stButton>button {
        width: 100%;
        border-radius: 6px;
        height: 3.2em;
        font-weight: 600;
        border: 1px solid #3b82f6;
    }

    .main-header {
        font-size: 3rem;
        background: -webkit-linear-gradient(45deg, #60a5fa, #3b82f6);
        -webkit-background-clip: text;
        -webkit-text-fill-color: transparent;
        text-align: center;
        font-weight: 800;
        margin-bottom: 0.2rem;
    }

    .sub-header {
        font-size: 1.2rem;
        color: #94a3b8;
        text-align: center;
        margin-bottom: 3rem;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)

# Sidebar
with st.sidebar:
    st.title("Control Panel")
    st.info("💡 **Tip:** Train a model in the 'Training' tab, then explain it in the 'Sensitivity' tab.")

    st.divider()
    st.markdown("### System Status")
    analysis = st.session_state.get("analysis")
    if analysis is not None and analysis.final_model is not None:
        st.success("✅ Model Ready")
        st.write(f"**Formula:** `{analysis.formula}`")
        st.write(f"**Model:** `{analysis.model_name}`")
        if analysis.sensitivity_analysis:
            st.write(f"**Explained with:** {', '.join(analysis.sensitivity_analysis)}")
    else:
        st.warning("⚠️ No Model Trained")

st.markdown('<div class="main-header">🔍 TidyML Analyst</div>', unsafe_allow_html=True)
st.markdown('<div class="sub-header">Train, tune and explain tabular models</div>', unsafe_allow_html=True)

tab_data, tab_train, tab_sensitivity, tab_report = st.tabs(
    ["📂 Data Upload", "⚙️ Training", "🔬 Sensitivity", "📊 Analysis Report"]
)

with tab_data:
    train_file = st.file_uploader("Upload your dataset (CSV)", type=["csv"], key="train_uploader")

    df = None
    formula = None
    task = None

    if train_file is not None:
        try:
            df = pd.read_csv(train_file)
            st.success(f"✅ Loaded dataset with {df.shape[0]} rows and {df.shape[1]} columns.")

            with st.expander("👀 View Raw Data"):
                st.dataframe(df.head(10), width="stretch")

            col1, col2 = st.columns([1, 2])
            with col1:
                st.markdown("### 🎯 Outcome")
                outcome = st.selectbox("Select Outcome Column", df.columns, index=len(df.columns) - 1)
                task = st.radio("Task", ["regression", "classification"], horizontal=True)
            with col2:
                st.markdown("### 🧩 Features")
                candidates = [col for col in df.columns if col != outcome]
                features = st.multiselect("Select Feature Columns", candidates, default=candidates)
                formula = f"{outcome} ~ {' + '.join(features)}" if features else None
                if formula:
                    st.code(formula)

        except Exception as e:
            st.error(f"Error reading file: {e}")

with tab_train:
    if df is not None and formula:
        col_model, col_tuner = st.columns(2)
        with col_model:
            model_name = st.selectbox("Model", list(MODELS))
        with col_tuner:
            tuner = st.selectbox("Tuner", list(TUNERS))
        metric = st.selectbox("Tuning metric", metrics_for_task(task),
                              index=metrics_for_task(task).index(DEFAULT_METRICS[task]))

        if st.button("Run Training Pipeline", type="primary"):
            config = AnalysisConfig()
            status_container = st.status("Running pipeline...", expanded=True)

            try:
                status_container.write("🕵️ Validating and splitting the data...")
                analysis = preprocessing(df, formula, task, config)

                status_container.write(f"🤖 Building {model_name}...")
                analysis = build_model(analysis, model_name)

                status_container.write(f"🎛️ Tuning with {tuner}...")
                analysis = fine_tuning(analysis, tuner, metrics=[metric], config=config)

                status_container.update(label="✅ Training Complete!", state="complete", expanded=False)
                st.session_state["analysis"] = analysis

                st.subheader("Performance")
                st.dataframe(summarize_performance(analysis, new_data="all"), width="stretch")

            except (InsufficientDataError, TargetConstantError, ExcessiveMissingDataError) as e:
                status_container.update(label="❌ Training Failed", state="error")
                st.error(f"🛑 Data Error: {e}")
            except ValidationError as e:
                status_container.update(label="❌ Training Failed", state="error")
                st.error(f"🛑 Invalid Input: {e}")
            except AnalysisError as e:
                status_container.update(label="⚠️ Training Interrupted", state="error")
                st.warning(f"⚠️ Training Interrupted: {e}")
    else:
        st.info("👈 Please upload a dataset and pick an outcome in the 'Data Upload' tab first.")

with tab_sensitivity:
    analysis = st.session_state.get("analysis")
    if analysis is not None and analysis.final_model is not None:
        methods = st.multiselect("Sensitivity methods", [m.value for m in Method], default=["PFI"])
        pfi_metric = st.selectbox("PFI metric", metrics_for_task(analysis.task),
                                  index=metrics_for_task(analysis.task).index(DEFAULT_METRICS[analysis.task]))

        if st.button("Run Sensitivity Analysis", type="primary"):
            def show_plot(key, fig):
                st.markdown(f"**{key}**")
                st.pyplot(fig)

            try:
                with st.spinner("Computing feature importance..."):
                    analysis = sensitivity_analysis(analysis, methods, metric=pfi_metric,
                                                    verbose=False, on_plot=show_plot)
                st.session_state["analysis"] = analysis
            except ValidationError as e:
                st.error(f"🛑 {e}")
            except ComputationError as e:
                st.error(f"🚨 Computation failed: {e}")
                if e.partial_result is not None:
                    st.session_state["analysis"] = e.partial_result
    else:
        st.info("Train a model first to unlock the sensitivity analysis.")

with tab_report:
    analysis = st.session_state.get("analysis")
    if analysis is not None:
        st.markdown(generate_markdown_report(analysis))

        if analysis.final_model is not None:
            try:
                model_path, meta_path = save_analysis(analysis)
                with open(model_path, "rb") as f:
                    st.download_button("📥 Download Analysis (.pkl)", f, file_name=os.path.basename(model_path))
            except OSError as e:
                st.warning(f"⚠️ Could not save analysis to disk: {e}")
    else:
        st.info("Run the training pipeline to generate the analysis report.")
