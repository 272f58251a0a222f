from tidyml.state import AnalysisObject
from tidyml.exceptions import AnalysisError
from tidyml.sensitivity import Method, summarize_result


def _markdown_table(df, float_format="{:.4f}") -> str:
    header = "| " + " | ".join([df.index.name or ""] + [str(c) for c in df.columns]) + " |\n"
    header += "|" + "---|" * (len(df.columns) + 1) + "\n"
    rows = ""
    for index, row in df.iterrows():
        cells = [float_format.format(v) if isinstance(v, float) else str(v) for v in row]
        rows += "| " + " | ".join([str(index)] + cells) + " |\n"
    return header + rows


def generate_markdown_report(analysis: AnalysisObject, top_features: int = 10) -> str:
    """
    Generates a Markdown report of every pipeline stage recorded in the analysis object.
    """
    if analysis.full_data is None:
        raise AnalysisError("AnalysisObject missing dataset snapshot. Run preprocessing() first.")

    # Section 1: Dataset Overview
    report = "# 📊 TidyML Analysis Report\n\n"
    report += "## 📈 Dataset Overview\n"
    report += f"Rows: **{len(analysis.full_data)}** | Features: **{len(analysis.features)}**\n"
    report += f"- Task: {analysis.task}\n"
    report += f"- Formula: `{analysis.formula}`\n"
    if analysis.is_classification:
        report += f"- Outcome levels: {analysis.outcome_levels} ({', '.join(analysis.outcome_classes)})\n"
    report += (
        f"- Split: {len(analysis.train_data)} train / {len(analysis.validation_data)} validation / "
        f"{len(analysis.test_data)} test\n\n"
    )

    # Section 2: Model
    report += "## 🏆 Model\n"
    if analysis.model_name:
        report += f"Model: **{analysis.model_name}**\n"
    else:
        report += "Model: **None built**\n"
    if analysis.tuner:
        report += f"Tuner: **{analysis.tuner}**\n"
    report += "\n"

    # Section 3: Data Quality Interventions
    report += "## 🛠️ Data Quality Interventions\n"
    has_issues = False

    if analysis.dropped_columns:
        has_issues = True
        for item in analysis.dropped_columns:
            report += f"- Dropped column **{item['col']}**: {item['reason']}\n"

    if analysis.warnings:
        has_issues = True
        for warning in analysis.warnings:
            report += f"- ⚠️ {warning}\n"

    if not has_issues:
        report += "No data quality issues detected.\n"
    report += "\n"

    # Section 4: Pipeline Steps
    report += "## ⚙️ Pipeline Steps\n"
    if analysis.preprocessing_steps:
        for step in analysis.preprocessing_steps:
            report += f"- {step}\n"
    else:
        report += "No pipeline steps recorded.\n"
    report += "\n"

    # Section 5: Performance
    report += "## 🎯 Model Performance\n"
    if analysis.metrics is not None:
        report += _markdown_table(analysis.metrics)
    else:
        report += "Model not tuned yet.\n"
    report += "\n"

    # Section 6: Sensitivity Analysis
    report += "## 🔍 Sensitivity Analysis\n"
    if not analysis.sensitivity_analysis:
        report += "No sensitivity analysis run.\n"
    for name, result in analysis.sensitivity_analysis.items():
        method = Method(name)
        for label, summary in summarize_result(method, result).items():
            title = f"### {name}" + (f" (class {label})" if label is not None else "")
            report += f"{title}\n"
            if 'feature' in summary.columns:
                summary = summary.set_index('feature')
            report += _markdown_table(summary.head(top_features))
            report += "\n"

    if analysis.plots:
        report += f"Plots: {', '.join(sorted(analysis.plots))}\n"

    return report
